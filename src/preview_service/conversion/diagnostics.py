"""Diagnostic records written beside preview artifacts when a build fails."""

from __future__ import annotations

import logging
import os
import tempfile
import traceback
from datetime import datetime, timezone
from pathlib import Path

from .interfaces import diagnostic_path_for

log = logging.getLogger(__name__)


def write_atomic(path: Path, data: bytes) -> Path:
    """Write ``data`` to a sibling temp file, fsync it, then replace ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "wb", dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp", delete=False
    ) as handle:
        try:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        except BaseException:
            handle.close()
            Path(handle.name).unlink(missing_ok=True)
            raise
        temp_name = handle.name
    try:
        Path(temp_name).replace(path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return path


def format_record(
    category: str,
    context: dict[str, object],
    exc: BaseException | None = None,
    *,
    now: datetime | None = None,
) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
    lines = [f"[{stamp}] preview build failed: {category}"]
    if exc is not None:
        lines.append(f"error: {exc}")
    excerpt = context.get("body_excerpt")
    for k, v in context.items():
        if k == "body_excerpt":
            continue
        lines.append(f"{k}: {v}")
    if excerpt is not None:
        lines.append("")
        lines.append("body excerpt:")
        lines.append(str(excerpt))
    if exc is not None:
        lines.append("")
        lines.append("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip())
    return "\n".join(lines) + "\n"


class DiagnosticRecorder:
    """Persists failure context next to the artifact it was meant to produce.

    ``record`` never raises: losing a diagnostic must not break the request
    that triggered the build.
    """

    def record(
        self,
        artifact_path: Path,
        category: str,
        context: dict[str, object],
        exc: BaseException | None = None,
    ) -> Path | None:
        path = diagnostic_path_for(artifact_path)
        log.error(
            "Preview build failed for %s: %s (%s)",
            artifact_path.name,
            category,
            exc,
            extra={"stage": "preview", "category": category, "artifact": str(artifact_path)},
        )
        try:
            write_atomic(path, format_record(category, context, exc).encode("utf-8"))
        except Exception:
            log.warning("Could not write diagnostic record %s", path, exc_info=True)
            return None
        return path

    def clear(self, artifact_path: Path) -> None:
        path = diagnostic_path_for(artifact_path)
        try:
            path.unlink(missing_ok=True)
        except OSError:
            log.warning("Could not remove stale diagnostic %s", path, exc_info=True)

    @staticmethod
    def read(artifact_path: Path) -> str | None:
        path = diagnostic_path_for(artifact_path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
