import logging
import os
import re
import time
from pathlib import Path
from typing import Awaitable, Callable

import requests

from .errors import DocumentStoreError, TransportError
from .interfaces import DocumentStore, HttpTransport, SourceDocument, TransportResponse

log = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {
    ".docx", ".doc", ".xlsx", ".xls", ".pptx", ".ppt", ".odt", ".ods", ".odp", ".txt", ".csv",
}

_INVALID_CHARS = re.compile(r'[\x00-\x1f<>:"/\\|?*]')


class RequestsTransport(HttpTransport):
    def __init__(self, timeout: float = 60.0, session: requests.Session | None = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    def post_json(self, url: str, payload: dict[str, object], headers: dict[str, str]) -> TransportResponse:
        try:
            resp = self._session.post(url, json=payload, headers=headers, timeout=self._timeout)
        except requests.RequestException as e:
            raise TransportError(f"POST {url} failed: {e}", endpoint=url) from e
        return TransportResponse(
            status_code=resp.status_code,
            reason=resp.reason or "",
            content_type=resp.headers.get("Content-Type", ""),
            body=resp.content,
        )

    def get_bytes(self, url: str) -> bytes:
        try:
            resp = self._session.get(url, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"GET {url} failed: {e}", endpoint=url) from e
        return resp.content

    def close(self) -> None:
        self._session.close()


def sanitize_filename(name: str) -> str:
    """Replace characters that are invalid in file names with underscores."""
    cleaned = _INVALID_CHARS.sub("_", name).strip()
    if not cleaned.strip("._"):
        return f"upload_{int(time.time())}"
    return cleaned


class LocalDocumentStore(DocumentStore):
    """Source documents kept as plain files in a single flat directory."""

    def __init__(self, docs_dir: str | Path) -> None:
        self._base = Path(docs_dir).resolve()

    def _path(self, name: str) -> Path:
        if not name or name != Path(name).name or name in {".", ".."}:
            raise DocumentStoreError("bad_name", f"invalid document name {name!r}")
        return self._base / name

    def get(self, name: str) -> SourceDocument | None:
        p = self._path(name)
        try:
            st = p.stat()
        except FileNotFoundError:
            return None
        if not p.is_file():
            return None
        return SourceDocument(name=name, path=p, mtime_ns=st.st_mtime_ns)

    def list_documents(self) -> list[SourceDocument]:
        if not self._base.is_dir():
            return []
        docs = []
        for p in sorted(self._base.iterdir()):
            if p.is_file() and not p.name.startswith("."):
                docs.append(SourceDocument(name=p.name, path=p, mtime_ns=p.stat().st_mtime_ns))
        return docs

    def unique_name(self, name: str) -> str:
        if not (self._base / name).exists():
            return name
        stem, ext = os.path.splitext(name)
        i = 1
        while True:
            candidate = f"{stem} ({i}){ext}"
            if not (self._base / candidate).exists():
                return candidate
            i += 1

    async def save_upload(
        self,
        filename: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_upload_mb: int,
    ) -> SourceDocument:
        """Stream an upload into the store under a sanitized, unused name."""
        original = Path(filename or "").name
        ext = os.path.splitext(original)[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise DocumentStoreError("unsupported_media_type", f"extension {ext or '(none)'} not allowed")
        self._base.mkdir(parents=True, exist_ok=True)
        name = self.unique_name(sanitize_filename(original))
        path = self._base / name

        size_bytes = 0
        CHUNK = 1024 * 1024
        max_bytes = max_upload_mb * 1024 * 1024
        with path.open("wb") as f_out:
            while True:
                chunk = await reader(CHUNK)
                if not chunk:
                    break
                b = bytes(chunk)
                size_bytes += len(b)
                if size_bytes > max_bytes:
                    f_out.close()
                    path.unlink(missing_ok=True)
                    raise DocumentStoreError("payload_too_large", f"upload exceeds {max_upload_mb} MB")
                f_out.write(b)
        log.info("Stored upload %s as %s (%s bytes)", original, name, size_bytes)
        return SourceDocument(name=name, path=path, mtime_ns=path.stat().st_mtime_ns)

    def write_bytes(self, name: str, data: bytes) -> SourceDocument:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return SourceDocument(name=name, path=path, mtime_ns=path.stat().st_mtime_ns)
