"""
Error types and error logging for vibrary.

None of these reach the end user from the background paths: detections
that fail identity resolution are dropped, corrupt partitions are reset,
invariant breaks are repaired, and backend failures abort the current
operation with a log line.  The CLI logs full tracebacks to a file and
shows a one-line message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class VibraryError(Exception):
    """Base class for vibrary errors."""


class InvalidDetection(VibraryError):
    """A detection has no usable identity (placeholder or empty title, media-file URL)."""


class BackendUnavailable(VibraryError):
    """A read or write against the key-value backend failed."""


class QuotaExceeded(BackendUnavailable):
    """A write would take the backend over its byte quota."""


class SchemaCorruption(VibraryError):
    """A persisted partition exists but is not a map."""


class InvariantViolation(VibraryError):
    """Library and playlists disagree (orphan library entry or dangling playlist member)."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting VIBRARY_STORE_PATH."""
    store = os.environ.get("VIBRARY_STORE_PATH")
    if store:
        return Path(store) / "vibrary-errors.log"
    return Path.home() / ".vibrary" / "vibrary-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write(f" {type(exc).__name__}: {exc}\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
