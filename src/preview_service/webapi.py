import asyncio
import logging
import mimetypes
import os
from pathlib import Path
from urllib.parse import quote

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.responses import FileResponse, JSONResponse

from preview_service.conversion import DocumentStoreError, PreviewPolicy, PreviewService, SourceDocument, job_key
from preview_service.conversion.adapters import LocalDocumentStore, RequestsTransport

log = logging.getLogger(__name__)

app = FastAPI(
    title="Document Preview Service",
    version=os.getenv("PREVIEW_SERVICE_VERSION", "0.1.0"),
    description=(
        "Stores office documents for editing in ONLYOFFICE Document Server "
        "and keeps a cached PDF preview of each one."
    ),
)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


# Global configuration defaults
DOCS_DIR = Path(os.getenv("DOCS_DIR", "./data/docs")).resolve()
PREVIEWS_DIR = Path(os.getenv("PREVIEWS_DIR", "./data/previews")).resolve()
DOCUMENT_SERVER_ORIGIN = os.getenv("DOCUMENT_SERVER_ORIGIN", "http://localhost:8080").rstrip("/")
# Base URL the Document Server uses to reach this service (files + callbacks).
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
CONVERT_MAX_ATTEMPTS = int(os.getenv("CONVERT_MAX_ATTEMPTS", "30"))
CONVERT_POLL_INTERVAL_SEC = float(os.getenv("CONVERT_POLL_INTERVAL_SEC", "3"))
CONVERT_SYNC_PROBE = _env_flag("CONVERT_SYNC_PROBE", "true")
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "60"))
PREVIEW_WAIT_SEC = float(os.getenv("PREVIEW_WAIT_SEC", "120"))
WORKERS = int(os.getenv("WORKERS", "4"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "200"))

API_JS_PATH = "/web-apps/apps/api/documents/api.js"
CONVERT_PATH = "/ConvertService.ashx"

# Document Server callback statuses that carry a document to store.
SAVE_STATUSES = {2, 6}

EDITOR_FILE_TYPES = {"docx", "xlsx", "pptx", "doc", "xls", "ppt", "odt", "ods", "odp", "txt", "csv"}

# Not every platform's mimetypes table knows the office formats.
OFFICE_MIME = {
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".doc": "application/msword",
    ".xls": "application/vnd.ms-excel",
    ".ppt": "application/vnd.ms-powerpoint",
    ".odt": "application/vnd.oasis.opendocument.text",
    ".ods": "application/vnd.oasis.opendocument.spreadsheet",
    ".odp": "application/vnd.oasis.opendocument.presentation",
}

STORE: LocalDocumentStore | None = None
TRANSPORT: RequestsTransport | None = None
SERVICE: PreviewService | None = None


@app.on_event("startup")
async def _startup() -> None:
    # Ensure base directories
    DOCS_DIR.mkdir(parents=True, exist_ok=True)
    PREVIEWS_DIR.mkdir(parents=True, exist_ok=True)
    global STORE, TRANSPORT, SERVICE
    STORE = LocalDocumentStore(DOCS_DIR)
    TRANSPORT = RequestsTransport(timeout=HTTP_TIMEOUT_SEC)
    SERVICE = PreviewService(
        STORE,
        TRANSPORT,
        previews_dir=PREVIEWS_DIR,
        convert_endpoint=f"{DOCUMENT_SERVER_ORIGIN}{CONVERT_PATH}",
        public_base_url=PUBLIC_BASE_URL,
        policy=PreviewPolicy(
            max_attempts=CONVERT_MAX_ATTEMPTS,
            poll_interval=CONVERT_POLL_INTERVAL_SEC,
            sync_probe=CONVERT_SYNC_PROBE,
        ),
        workers=WORKERS,
    )
    log.info("Preview service started: docs=%s previews=%s converter=%s", DOCS_DIR, PREVIEWS_DIR, DOCUMENT_SERVER_ORIGIN)


@app.on_event("shutdown")
async def _shutdown() -> None:
    if SERVICE is not None:
        SERVICE.shutdown()
    if TRANSPORT is not None:
        TRANSPORT.close()


def _service() -> PreviewService:
    assert SERVICE is not None
    return SERVICE


def _store() -> LocalDocumentStore:
    assert STORE is not None
    return STORE


def _require_document(name: str) -> SourceDocument:
    try:
        doc = _store().get(name)
    except DocumentStoreError as e:
        raise HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})
    if doc is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "file not found"})
    return doc


def _editor_file_type(name: str) -> str:
    ext = os.path.splitext(name)[1].lstrip(".").lower()
    return ext if ext in EDITOR_FILE_TYPES else "docx"


def _preview_link(name: str) -> str:
    return f"/previews/{quote(Path(name).stem)}.pdf"


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.get("/documents")
def list_docs() -> JSONResponse:
    """List stored documents with the state of their preview."""
    service = _service()
    items = []
    for doc in _store().list_documents():
        entry = service.state_of(doc.name)
        items.append({
            "name": doc.name,
            "preview": entry.state,
            "links": {
                "file": f"/files/{quote(doc.name)}",
                "edit": f"/edit/{quote(doc.name)}",
                "preview": _preview_link(doc.name),
            },
        })
    return JSONResponse(content={"documents": items, "api_js": f"{DOCUMENT_SERVER_ORIGIN}{API_JS_PATH}"})


@app.post("/documents", status_code=status.HTTP_201_CREATED)
async def upload_doc(file: UploadFile = File(...)) -> JSONResponse:
    """Store an uploaded document and build its preview.

    The preview build is awaited for at most PREVIEW_WAIT_SEC; a slow
    conversion is reported as ``pending`` and finishes in the background.
    """

    async def read_chunk(n: int) -> bytes:
        return await file.read(n)

    try:
        doc = await _store().save_upload(file.filename or "", read_chunk, max_upload_mb=MAX_UPLOAD_MB)
    except DocumentStoreError as e:
        code = {"unsupported_media_type": 415, "payload_too_large": 413}.get(e.code, 400)
        raise HTTPException(status_code=code, detail={"code": e.code, "message": str(e)})

    outcome = await asyncio.to_thread(_service().ensure_preview, doc.name, wait_timeout=PREVIEW_WAIT_SEC)
    body = {
        "name": doc.name,
        "preview": outcome.status,
        "links": {
            "file": f"/files/{quote(doc.name)}",
            "edit": f"/edit/{quote(doc.name)}",
            "preview": _preview_link(doc.name),
        },
    }
    headers = {"Location": f"/edit/{quote(doc.name)}"}
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=body, headers=headers)


@app.get("/files/{name}")
def get_file(name: str) -> FileResponse:
    """Serve a source document; the Document Server downloads from here."""
    doc = _require_document(name)
    ext = os.path.splitext(doc.name)[1].lower()
    content_type = OFFICE_MIME.get(ext) or mimetypes.guess_type(doc.name)[0] or "application/octet-stream"
    return FileResponse(doc.path, media_type=content_type, filename=doc.name)


@app.get("/previews/{name}")
def get_preview(name: str) -> FileResponse:
    if name != Path(name).name or not name.lower().endswith(".pdf"):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "preview not found"})
    path = _service().previews_dir / name
    if not path.is_file():
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "preview not found"})
    return FileResponse(path, media_type="application/pdf")


@app.get("/edit/{name}")
def editor_config(name: str, mode: str = "edit") -> JSONResponse:
    """Editor configuration for embedding the Document Server editor."""
    doc = _require_document(name)
    config = {
        "document": {
            "fileType": _editor_file_type(doc.name),
            "key": job_key(doc.name, doc.mtime_ns),
            "title": doc.name,
            "url": f"{PUBLIC_BASE_URL}/files/{quote(doc.name)}",
        },
        "editorConfig": {
            "mode": "view" if mode == "view" else "edit",
            "callbackUrl": f"{PUBLIC_BASE_URL}/save/{quote(doc.name)}",
            "user": {"id": "u1", "name": "Demo User"},
        },
        "width": "100%",
        "height": "100%",
        "type": "desktop",
    }
    return JSONResponse(content={"api_js": f"{DOCUMENT_SERVER_ORIGIN}{API_JS_PATH}", "config": config})


@app.post("/save/{name}")
async def save_callback(name: str, request: Request) -> JSONResponse:
    """Document Server save callback.

    Statuses 2 (ready for saving) and 6 (force save) carry a URL to the
    edited file, which replaces the stored document before the preview is
    rebuilt. Every other status is acknowledged as-is.
    """
    try:
        body = await request.json()
        cb_status = int(body["status"])
    except (ValueError, KeyError, TypeError):
        raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "malformed callback body"})
    log.info("Save callback for %s: status=%s", name, cb_status)

    if cb_status in SAVE_STATUSES:
        url = body.get("url")
        if not url:
            raise HTTPException(status_code=400, detail={"code": "bad_request", "message": "callback has no url"})
        assert TRANSPORT is not None
        try:
            data = await asyncio.to_thread(TRANSPORT.get_bytes, str(url))
            _store().write_bytes(name, data)
        except DocumentStoreError as e:
            raise HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})
        except Exception:
            log.exception("Saving %s from %s failed", name, url)
            return JSONResponse(content={"error": 1})
        await asyncio.to_thread(_service().ensure_preview, name, wait_timeout=PREVIEW_WAIT_SEC)

    return JSONResponse(content={"error": 0})


@app.get("/previews-regenerate")
async def regenerate_previews(force: bool = False) -> JSONResponse:
    """Run the preview pipeline for every document and report the result."""
    report = await asyncio.to_thread(_service().regenerate_all, force=force)
    return JSONResponse(content=report.to_dict())


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8000). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    # Enable reload in dev unless explicitly disabled
    reload = _env_flag("RELOAD", "true")

    uvicorn.run("preview_service.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
