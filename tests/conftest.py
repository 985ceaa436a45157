"""Shared fixtures: a scripted in-memory transport and a preview service wired to it."""

from __future__ import annotations

import json
import logging
import sys
import threading
from pathlib import Path

import pytest

from preview_service.conversion import PreviewPolicy, PreviewService, TransportError, TransportResponse
from preview_service.conversion.adapters import LocalDocumentStore

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

ENDPOINT = "http://docserver.test/ConvertService.ashx"
PUBLIC_BASE = "http://app.test"
RESULT_URL = "http://docserver.test/cache/output.pdf"
PDF_BYTES = b"%PDF-1.7\n1 0 obj\n<< >>\nendobj\n%%EOF\n"


def convert_json(percent: int = 0, end: bool = False, file_url: str | None = None) -> TransportResponse:
    body: dict[str, object] = {"percent": percent, "endConvert": end}
    if file_url is not None:
        body["fileUrl"] = file_url
    return TransportResponse(200, "OK", "application/json; charset=utf-8", json.dumps(body).encode("utf-8"))


def done(file_url: str = RESULT_URL) -> TransportResponse:
    return convert_json(100, True, file_url)


class FakeTransport:
    """Replays scripted converter responses; the last one repeats forever.

    A scripted item may be a ``TransportResponse``, an exception to raise,
    or a zero-argument callable returning either.
    """

    def __init__(self, responses=None, downloads=None) -> None:
        self.responses = list(responses or [])
        self.downloads: dict[str, bytes] = dict(downloads or {})
        self.posts: list[tuple[str, dict[str, object], dict[str, str]]] = []
        self.gets: list[str] = []
        self._lock = threading.Lock()

    def script(self, *responses) -> None:
        with self._lock:
            self.responses = list(responses)

    def post_json(self, url, payload, headers):
        with self._lock:
            self.posts.append((url, dict(payload), dict(headers)))
            if not self.responses:
                raise AssertionError("no scripted response left")
            item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(item):
            item = item()
        if isinstance(item, BaseException):
            raise item
        return item

    def get_bytes(self, url):
        self.gets.append(url)
        if url not in self.downloads:
            raise TransportError(f"GET {url} failed: 404", endpoint=url)
        return self.downloads[url]


class GatedTransport(FakeTransport):
    """FakeTransport whose POSTs block until ``gate`` is set."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.gate = threading.Event()
        self.entered = threading.Event()

    def post_json(self, url, payload, headers):
        self.entered.set()
        assert self.gate.wait(5), "gate never opened"
        return super().post_json(url, payload, headers)


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    d = tmp_path / "docs"
    d.mkdir()
    return d


@pytest.fixture
def previews_dir(tmp_path: Path) -> Path:
    return tmp_path / "previews"


@pytest.fixture
def store(docs_dir: Path) -> LocalDocumentStore:
    return LocalDocumentStore(docs_dir)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport(downloads={RESULT_URL: PDF_BYTES})


@pytest.fixture
def make_service(store, previews_dir):
    created: list[PreviewService] = []

    def _make(transport, *, max_attempts: int = 5, poll_interval: float = 0.0, sync_probe: bool = True) -> PreviewService:
        service = PreviewService(
            store,
            transport,
            previews_dir=previews_dir,
            convert_endpoint=ENDPOINT,
            public_base_url=PUBLIC_BASE,
            policy=PreviewPolicy(max_attempts=max_attempts, poll_interval=poll_interval, sync_probe=sync_probe),
            workers=2,
        )
        created.append(service)
        return service

    yield _make
    for s in created:
        s.shutdown()


@pytest.fixture
def source(docs_dir: Path) -> Path:
    p = docs_dir / "report.docx"
    p.write_bytes(b"PK\x03\x04 fake docx")
    return p
