"""Client and polling driver for the Document Server conversion API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace

from .cancellation import CancellationToken
from .errors import (
    ContractViolationError,
    ConversionCancelledError,
    ConversionTimeoutError,
    PreviewError,
    ProtocolShapeError,
)
from .interfaces import HttpTransport

log = logging.getLogger(__name__)

EXCERPT_LIMIT = 500
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_POLL_INTERVAL_SEC = 3.0


@dataclass(frozen=True)
class ConversionRequest:
    url: str
    filetype: str
    title: str
    key: str
    outputtype: str = "pdf"
    is_async: bool = True

    def to_payload(self) -> dict[str, object]:
        return {
            "async": self.is_async,
            "url": self.url,
            "outputtype": self.outputtype,
            "filetype": self.filetype,
            "title": self.title,
            "key": self.key,
        }


@dataclass(frozen=True)
class ConversionStatus:
    completed: bool
    percent: int
    result_url: str | None = None


class JobState:
    PENDING = "pending"
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class ConversionJob:
    request: ConversionRequest
    state: str = JobState.PENDING
    polls: int = 0
    percent: int = 0
    result_url: str | None = None
    history: list[int] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.request.key


class ConversionClient:
    """Single blocking call to the conversion endpoint. No retries, no sleeping."""

    def __init__(self, transport: HttpTransport, endpoint: str) -> None:
        self._transport = transport
        self._endpoint = endpoint

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def request(self, req: ConversionRequest) -> ConversionStatus:
        payload = req.to_payload()
        resp = self._transport.post_json(
            self._endpoint,
            payload,
            {"Accept": "application/json"},
        )
        summary = {
            "endpoint": self._endpoint,
            "payload_url": req.url,
            "payload_filetype": req.filetype,
            "payload_key": req.key,
            "payload_async": req.is_async,
        }
        if "json" not in resp.content_type.lower():
            raise ProtocolShapeError(
                "conversion service did not return JSON",
                status_code=resp.status_code,
                reason=resp.reason,
                content_type=resp.content_type,
                body_excerpt=resp.text[:EXCERPT_LIMIT],
                **summary,
            )
        try:
            data = json.loads(resp.body)
        except ValueError as e:
            raise ProtocolShapeError(
                f"conversion service returned malformed JSON: {e}",
                status_code=resp.status_code,
                content_type=resp.content_type,
                body_excerpt=resp.text[:EXCERPT_LIMIT],
                **summary,
            ) from e
        return self._decode(data, resp.status_code, resp.text, summary)

    @staticmethod
    def _decode(data: object, status_code: int, text: str, summary: dict[str, object]) -> ConversionStatus:
        if not isinstance(data, dict):
            raise ProtocolShapeError(
                "conversion response is not a JSON object",
                status_code=status_code,
                body_excerpt=text[:EXCERPT_LIMIT],
                **summary,
            )
        try:
            percent = int(data.get("percent") or 0)
        except (TypeError, ValueError) as e:
            raise ProtocolShapeError(
                f"conversion response has non-numeric percent {data.get('percent')!r}",
                status_code=status_code,
                body_excerpt=text[:EXCERPT_LIMIT],
                **summary,
            ) from e
        completed = data.get("endConvert") is True
        result_url = data.get("fileUrl") or None
        if completed and not result_url:
            raise ContractViolationError(
                "endConvert=true but the response has no fileUrl",
                status_code=status_code,
                body_excerpt=text[:EXCERPT_LIMIT],
                **summary,
            )
        return ConversionStatus(
            completed=completed,
            percent=max(0, min(percent, 100)),
            result_url=str(result_url) if result_url else None,
        )


def poll_until_done(
    client: ConversionClient,
    request: ConversionRequest,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
    sync_probe: bool = True,
    cancel: CancellationToken | None = None,
) -> ConversionJob:
    """Poll the converter until it reports completion.

    Returns the completed job. Raises ``ConversionTimeoutError`` once
    ``max_attempts`` polls pass without ``endConvert``, after an optional
    synchronous probe whose answer is attached to the error context.
    Client errors propagate unchanged.
    """
    job = ConversionJob(request=replace(request, is_async=True))
    token = cancel or CancellationToken()
    job.state = JobState.POLLING
    try:
        for attempt in range(1, max_attempts + 1):
            if token.is_cancelled():
                raise ConversionCancelledError(
                    "conversion cancelled", key=job.key, polls=job.polls, percent=job.percent
                )
            status = client.request(job.request)
            job.polls = attempt
            job.percent = status.percent
            job.history.append(status.percent)
            log.info(
                "Convert poll %s/%s key=%s percent=%s end=%s",
                attempt,
                max_attempts,
                job.key,
                status.percent,
                status.completed,
            )
            if status.completed:
                job.result_url = status.result_url
                job.state = JobState.COMPLETED
                return job
            if attempt < max_attempts and token.wait(poll_interval):
                raise ConversionCancelledError(
                    "conversion cancelled", key=job.key, polls=job.polls, percent=job.percent
                )
    except PreviewError:
        job.state = JobState.FAILED
        raise

    job.state = JobState.TIMED_OUT
    context: dict[str, object] = {
        "endpoint": client.endpoint,
        "key": job.key,
        "polls": job.polls,
        "last_percent": job.percent,
        "payload_url": request.url,
        "payload_filetype": request.filetype,
    }
    if sync_probe:
        context.update(_probe(client, job.request))
    raise ConversionTimeoutError(
        f"conversion did not finish after {max_attempts} polls", **context
    )


def _probe(client: ConversionClient, request: ConversionRequest) -> dict[str, object]:
    try:
        status = client.request(replace(request, is_async=False))
    except PreviewError as e:
        log.info("Sync probe for key=%s failed: %s", request.key, e)
        probe: dict[str, object] = {"probe_error": str(e)}
        for k in ("status_code", "content_type", "body_excerpt"):
            if k in e.context:
                probe[f"probe_{k}"] = e.context[k]
        return probe
    return {
        "probe_percent": status.percent,
        "probe_end_convert": status.completed,
        "probe_file_url": status.result_url,
    }
