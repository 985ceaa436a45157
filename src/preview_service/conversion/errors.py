"""Failure taxonomy for the preview pipeline.

Every error carries a ``category`` used as the diagnostic record heading and
a ``context`` mapping with whatever the raising layer knew at the time
(endpoint, payload fields, status code, body excerpt).
"""

from __future__ import annotations


class PreviewError(Exception):
    category = "unexpected"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.context: dict[str, object] = dict(context)


class ProtocolShapeError(PreviewError):
    """The converter answered with something that is not the expected JSON."""

    category = "protocol_shape"


class ContractViolationError(ProtocolShapeError):
    """JSON was returned but required fields are missing (e.g. no fileUrl)."""


class DownloadIntegrityError(PreviewError):
    category = "download_integrity"


class ConversionTimeoutError(PreviewError):
    category = "timeout"


class TransportError(PreviewError):
    category = "transport"


class ConversionCancelledError(PreviewError):
    category = "cancelled"


class DocumentStoreError(Exception):
    """Raised by the document store for rejected uploads and bad names."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
