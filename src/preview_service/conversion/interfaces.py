from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Protocol


@dataclass(frozen=True)
class SourceDocument:
    name: str
    path: Path
    mtime_ns: int


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    reason: str
    content_type: str
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpTransport(Protocol):
    def post_json(self, url: str, payload: dict[str, object], headers: dict[str, str]) -> TransportResponse:
        """POST ``payload`` as a JSON body and return the raw response.
        Network failures surface as ``TransportError``; HTTP error statuses do not raise.
        """

    def get_bytes(self, url: str) -> bytes:
        """GET ``url`` and return the body; non-2xx raises ``TransportError``."""


class DocumentStore(Protocol):
    def get(self, name: str) -> SourceDocument | None:
        ...

    def list_documents(self) -> list[SourceDocument]:
        ...

    async def save_upload(
        self,
        filename: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_upload_mb: int,
    ) -> SourceDocument:
        ...

    def write_bytes(self, name: str, data: bytes) -> SourceDocument:
        ...


@dataclass(frozen=True)
class PreviewPaths:
    artifact_path: Path
    diagnostic_path: Path

    @classmethod
    def for_source(cls, previews_dir: Path, name: str) -> "PreviewPaths":
        stem = Path(name).stem
        artifact = previews_dir / f"{stem}.pdf"
        return cls(artifact_path=artifact, diagnostic_path=diagnostic_path_for(artifact))


def diagnostic_path_for(artifact_path: Path) -> Path:
    return artifact_path.with_name(f"{artifact_path.stem}.err.txt")
