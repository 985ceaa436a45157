"""Job keys and cache staleness for preview artifacts."""

from __future__ import annotations

import hashlib
import logging
import uuid
from pathlib import Path

log = logging.getLogger(__name__)

# Document Server rejects keys longer than this.
MAX_KEY_LENGTH = 128


def job_key(name: str, mtime_ticks: int) -> str:
    """Return the converter job key for a source identified by name + mtime.

    The key is a lowercase SHA-256 hex digest, so it only ever contains
    characters the converter accepts. If hashing fails a random key is
    returned instead: the conversion still runs, it just cannot be reused.
    """
    try:
        raw = f"{name}_{mtime_ticks}".encode("utf-8")
        return hashlib.sha256(raw).hexdigest()[:MAX_KEY_LENGTH]
    except Exception:
        log.warning("job_key: falling back to random key for %r", name, exc_info=True)
        return uuid.uuid4().hex[:MAX_KEY_LENGTH]


def needs_build(source_path: Path, artifact_path: Path) -> bool:
    """True when the artifact is missing or older than its source."""
    if not artifact_path.exists():
        return True
    return source_path.stat().st_mtime_ns > artifact_path.stat().st_mtime_ns
