"""
Error taxonomy and error logging utilities for docsync.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class DocSyncError(Exception):
    """Base class for all docsync errors."""


class ValidationError(DocSyncError):
    """File rejected locally (type or size). Never sent over the network."""


class ClientError(DocSyncError):
    """The service rejected the request (4xx). Not retried."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(DocSyncError):
    """Timeout, connection failure, or 5xx after retries were exhausted."""

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class MalformedResponseError(DocSyncError):
    """A 2xx response whose body could not be understood."""


class StorageError(DocSyncError):
    """A storage backend could not complete a write."""


class PollError(DocSyncError):
    """A status check failed while polling a document."""


class DuplicateDocumentError(DocSyncError):
    """A record with this id is already registered (caller bug)."""


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path: explicit store, then DOCSYNC_STORE_PATH, then ~/.docsync."""
    if store_path is not None:
        return Path(store_path) / "docsync-errors.log"
    store = os.environ.get("DOCSYNC_STORE_PATH")
    if store:
        return Path(store) / "docsync-errors.log"
    return Path.home() / ".docsync" / "docsync-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory to log into (default: DOCSYNC_STORE_PATH or ~/.docsync)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
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
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
