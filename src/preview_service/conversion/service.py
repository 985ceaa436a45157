import logging
import os
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

from .cancellation import CancellationToken, LinkedToken
from .client import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_SEC,
    ConversionClient,
    ConversionRequest,
    poll_until_done,
)
from .diagnostics import DiagnosticRecorder, write_atomic
from .errors import DocumentStoreError, DownloadIntegrityError, PreviewError
from .interfaces import DocumentStore, HttpTransport, PreviewPaths, SourceDocument
from .keys import job_key, needs_build

log = logging.getLogger(__name__)


class PreviewStatus:
    FRESH = "fresh"
    BUILT = "built"
    FAILED = "failed"
    PENDING = "pending"
    MISSING = "missing"


@dataclass(frozen=True)
class PreviewOutcome:
    name: str
    status: str
    artifact_path: Path | None = None
    diagnostic_path: Path | None = None
    category: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (PreviewStatus.FRESH, PreviewStatus.BUILT)


@dataclass(frozen=True)
class PreviewPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SEC
    sync_probe: bool = True


@dataclass(frozen=True)
class ReportEntry:
    name: str
    state: str  # "artifact" | "diagnostic" | "none"
    artifact_path: str | None = None
    diagnostic: str | None = None


@dataclass
class RegenerationReport:
    entries: list[ReportEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "entries": [
                {
                    "name": e.name,
                    "state": e.state,
                    "artifact_path": e.artifact_path,
                    "diagnostic": e.diagnostic,
                }
                for e in self.entries
            ],
            "counts": {
                state: sum(1 for e in self.entries if e.state == state)
                for state in ("artifact", "diagnostic", "none")
            },
        }


class PreviewService:
    """Keeps a PDF preview per source document in sync with its source.

    Builds are delegated to the remote converter. Concurrent requests for the
    same document share a single in-flight build; callers never see an
    exception from a failed build, only a ``PreviewOutcome`` and whatever is
    now on disk.
    """

    def __init__(
        self,
        store: DocumentStore,
        transport: HttpTransport,
        *,
        previews_dir: str | Path,
        convert_endpoint: str,
        public_base_url: str,
        policy: PreviewPolicy | None = None,
        recorder: DiagnosticRecorder | None = None,
        workers: int = 4,
    ) -> None:
        self._store = store
        self._transport = transport
        self._previews_dir = Path(previews_dir).resolve()
        self._client = ConversionClient(transport, convert_endpoint)
        self._public_base_url = public_base_url.rstrip("/")
        self._policy = policy or PreviewPolicy()
        self._recorder = recorder or DiagnosticRecorder()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="preview")
        self._inflight: dict[str, Future] = {}
        self._lock = threading.RLock()
        self._shutdown = CancellationToken()

    @property
    def previews_dir(self) -> Path:
        return self._previews_dir

    def paths_for(self, name: str) -> PreviewPaths:
        return PreviewPaths.for_source(self._previews_dir, name)

    def source_url(self, name: str) -> str:
        return f"{self._public_base_url}/files/{quote(name)}"

    def shutdown(self) -> None:
        self._shutdown.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def ensure_preview(
        self,
        name: str,
        *,
        force: bool = False,
        wait_timeout: float | None = None,
        cancel: CancellationToken | None = None,
    ) -> PreviewOutcome:
        """Build the preview for ``name`` if it is missing or stale.

        ``wait_timeout`` bounds how long the caller blocks; when it expires a
        ``pending`` outcome is returned and the build carries on in the
        background. ``cancel`` aborts polling, but only for a build this call
        started; joining an existing build never cancels it.
        """
        try:
            doc = self._store.get(name)
            if doc is None:
                return PreviewOutcome(name=name, status=PreviewStatus.MISSING)
            paths = self.paths_for(name)
            if not force and not needs_build(doc.path, paths.artifact_path):
                return PreviewOutcome(name=name, status=PreviewStatus.FRESH, artifact_path=paths.artifact_path)
        except (DocumentStoreError, FileNotFoundError):
            log.warning("Cannot build preview for %r: source unavailable", name, exc_info=True)
            return PreviewOutcome(name=name, status=PreviewStatus.MISSING)

        flight_key = paths.artifact_path.name
        with self._lock:
            future = self._inflight.get(flight_key)
            if future is None and not force:
                # A build that finished since the check above may already cover this source.
                try:
                    stale = needs_build(doc.path, paths.artifact_path)
                except FileNotFoundError:
                    return PreviewOutcome(name=name, status=PreviewStatus.MISSING)
                if not stale:
                    return PreviewOutcome(name=name, status=PreviewStatus.FRESH, artifact_path=paths.artifact_path)
            if future is None:
                token = LinkedToken(self._shutdown, cancel)
                try:
                    future = self._executor.submit(self._build, doc, paths, token)
                except RuntimeError:
                    log.warning("Preview service is shut down; not building %s", name)
                    return PreviewOutcome(name=name, status=PreviewStatus.FAILED, category="cancelled")
                self._inflight[flight_key] = future
                future.add_done_callback(lambda f, k=flight_key: self._release(k, f))
            else:
                log.info("Joining in-flight preview build for %s", name)

        try:
            return future.result(timeout=wait_timeout)
        except FutureTimeout:
            log.info("Stopped waiting for preview of %s after %ss; build continues", name, wait_timeout)
            return PreviewOutcome(name=name, status=PreviewStatus.PENDING, artifact_path=paths.artifact_path)
        except CancelledError:
            return PreviewOutcome(name=name, status=PreviewStatus.FAILED, category="cancelled")

    def _release(self, key: str, future: Future) -> None:
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    def _build(self, doc: SourceDocument, paths: PreviewPaths, token: CancellationToken) -> PreviewOutcome:
        ext = os.path.splitext(doc.name)[1].lstrip(".").lower()
        request = ConversionRequest(
            url=self.source_url(doc.name),
            filetype=ext,
            title=doc.name,
            key=job_key(doc.name, doc.mtime_ns),
        )
        log.info("Building preview for %s key=%s", doc.name, request.key)
        try:
            job = poll_until_done(
                self._client,
                request,
                max_attempts=self._policy.max_attempts,
                poll_interval=self._policy.poll_interval,
                sync_probe=self._policy.sync_probe,
                cancel=token,
            )
            self._commit(doc, paths, str(job.result_url))
        except PreviewError as e:
            context = {"document": doc.name, "key": request.key, **e.context}
            written = self._recorder.record(paths.artifact_path, e.category, context, e)
            return PreviewOutcome(
                name=doc.name,
                status=PreviewStatus.FAILED,
                diagnostic_path=written,
                category=e.category,
            )
        except Exception as e:
            context = {"document": doc.name, "key": request.key, "endpoint": self._client.endpoint}
            written = self._recorder.record(paths.artifact_path, "unexpected", context, e)
            return PreviewOutcome(
                name=doc.name,
                status=PreviewStatus.FAILED,
                diagnostic_path=written,
                category="unexpected",
            )
        log.info("Preview ready for %s at %s", doc.name, paths.artifact_path)
        return PreviewOutcome(name=doc.name, status=PreviewStatus.BUILT, artifact_path=paths.artifact_path)

    def _commit(self, doc: SourceDocument, paths: PreviewPaths, result_url: str) -> None:
        data = self._transport.get_bytes(result_url)
        if not data:
            raise DownloadIntegrityError(
                "converted PDF download was empty", result_url=result_url, bytes=0
            )
        write_atomic(paths.artifact_path, data)
        # Stamp with the source mtime the key was derived from; an edit made
        # while converting then still compares as newer.
        os.utime(paths.artifact_path, ns=(doc.mtime_ns, doc.mtime_ns))
        self._recorder.clear(paths.artifact_path)

    def state_of(self, name: str) -> ReportEntry:
        """Report what is on disk for ``name``.

        A stale artifact left behind by a failed rebuild loses to the
        diagnostic that explains the failure. A current artifact still carries
        the diagnostic of a failed forced rebuild.
        """
        paths = self.paths_for(name)
        doc = self._store.get(name)
        diagnostic = self._recorder.read(paths.artifact_path)
        if paths.artifact_path.exists():
            stale = doc is not None and needs_build(doc.path, paths.artifact_path)
            if not (stale and diagnostic is not None):
                return ReportEntry(
                    name=name,
                    state="artifact",
                    artifact_path=str(paths.artifact_path),
                    diagnostic=diagnostic,
                )
        if diagnostic is not None:
            return ReportEntry(name=name, state="diagnostic", diagnostic=diagnostic)
        return ReportEntry(name=name, state="none")

    def regenerate_all(self, *, force: bool = False) -> RegenerationReport:
        """Run the pipeline for every stored document and report what is on disk."""
        report = RegenerationReport()
        for doc in self._store.list_documents():
            self.ensure_preview(doc.name, force=force)
            report.entries.append(self.state_of(doc.name))
        return report
