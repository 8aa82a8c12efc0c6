"""
Error types and error logging for snaptag.

NotFound and InvalidState are benign outcomes that callers handle quietly.
StorageError and PlatformSchedulingError are failures the user should see.
Full stack traces for unexpected errors go to a log file while the CLI
shows a clean message.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .types import Alarm


class SnaptagError(Exception):
    """Base class for all snaptag errors."""


class ValidationError(SnaptagError, ValueError):
    """Malformed input, rejected before anything is persisted."""


class NotFound(SnaptagError, LookupError):
    """Unknown record or alarm id."""

    def __init__(self, kind: str, id: str):
        super().__init__(f"{kind} not found: {id}")
        self.kind = kind
        self.id = id


class InvalidState(SnaptagError):
    """Operation not valid for the alarm's current status."""


class StorageError(SnaptagError):
    """A durable write or read failed; the operation was not applied."""


class PlatformSchedulingError(SnaptagError):
    """
    The timer collaborator rejected a callback request.

    When raised from scheduling, ``alarm`` holds the alarm that was still
    persisted as pending (and flagged with the error).
    """

    def __init__(self, message: str, alarm: Optional["Alarm"] = None):
        super().__init__(message)
        self.alarm = alarm


def _error_log_path() -> Path:
    """Resolve error log path, respecting SNAPTAG_STORE_PATH."""
    store = os.environ.get("SNAPTAG_STORE_PATH")
    if store:
        return Path(store) / "snaptag-errors.log"
    return Path.home() / ".snaptag" / "snaptag-errors.log"


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
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log — don't crash over it
    return log_path
