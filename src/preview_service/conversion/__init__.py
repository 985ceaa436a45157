"""
Domain layer for preview generation.
Provides gateways (storage, HTTP transport), the Document Server conversion
client and the service that keeps a PDF preview per source document fresh,
so front-ends (HTTP or others) can use the same core logic.
"""

from .cancellation import CancellationToken
from .client import ConversionClient, ConversionJob, ConversionRequest, ConversionStatus, poll_until_done
from .diagnostics import DiagnosticRecorder
from .errors import (
    ContractViolationError,
    ConversionCancelledError,
    ConversionTimeoutError,
    DocumentStoreError,
    DownloadIntegrityError,
    PreviewError,
    ProtocolShapeError,
    TransportError,
)
from .interfaces import DocumentStore, HttpTransport, PreviewPaths, SourceDocument, TransportResponse
from .keys import job_key, needs_build
from .service import PreviewOutcome, PreviewPolicy, PreviewService, PreviewStatus, RegenerationReport
