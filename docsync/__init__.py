"""
docsync: document lifecycle and resilient sync engine.

Uploads documents to an ingestion service, tracks their processing
until they are queryable, keeps local copies in a native directory or
a metadata-only fallback, and carries chat session continuity.
"""

__version__ = "0.1.0"

from .errors import (
    ClientError,
    DocSyncError,
    MalformedResponseError,
    NetworkError,
    PollError,
    StorageError,
    ValidationError,
)
from .orchestrator import SyncOrchestrator, validate_upload
from .types import DocumentRecord, DocumentStatus, UploadFile

__all__ = [
    "ClientError",
    "DocSyncError",
    "DocumentRecord",
    "DocumentStatus",
    "MalformedResponseError",
    "NetworkError",
    "PollError",
    "StorageError",
    "SyncOrchestrator",
    "UploadFile",
    "ValidationError",
    "validate_upload",
]
