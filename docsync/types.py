"""
Data types for document sync.
"""

import mimetypes
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional


MAX_UPLOAD_BYTES = 100 * 1024 * 1024

ALLOWED_EXTENSIONS = frozenset({
    "pdf", "doc", "docx", "txt", "xlsx", "xls", "png", "jpg", "jpeg",
    "gif", "csv", "json", "xml", "html", "md", "rtf",
})

# Category filter value that matches every category
ALL_CATEGORIES = "all"


def utc_now() -> str:
    """Current UTC timestamp in canonical format: YYYY-MM-DDTHH:MM:SS."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")


def provisional_id() -> str:
    """Local id for an upload that has not been acknowledged yet."""
    return f"upload-{uuid.uuid4().hex}"


class DocumentStatus(str, Enum):
    """Processing state of a document on the ingestion service."""

    UPLOADING = "uploading"
    PROCESSING = "processing"
    INDEXED = "indexed"
    READY = "ready"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.READY, DocumentStatus.ERROR)

    @property
    def rank(self) -> int:
        """Position on the happy path. ERROR ranks above everything."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    DocumentStatus.UPLOADING: 0,
    DocumentStatus.PROCESSING: 1,
    DocumentStatus.INDEXED: 2,
    DocumentStatus.READY: 3,
    DocumentStatus.ERROR: 4,
}


@dataclass(frozen=True)
class DocumentCategory:
    id: str
    name: str
    color: str


DEFAULT_CATEGORIES: tuple[DocumentCategory, ...] = (
    DocumentCategory("1", "Tax Returns", "blue"),
    DocumentCategory("2", "Financial Statements", "green"),
    DocumentCategory("3", "Receipts", "orange"),
    DocumentCategory("4", "Invoices", "purple"),
    DocumentCategory("5", "Legal Documents", "red"),
    DocumentCategory("6", "Other", "gray"),
)


@dataclass
class UploadFile:
    """A user-selected file, held in memory for the duration of an upload."""
    name: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        _, dot, ext = self.name.rpartition(".")
        return ext.lower() if dot else ""

    @classmethod
    def from_path(cls, path: Path) -> "UploadFile":
        path = Path(path)
        mime, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            content=path.read_bytes(),
            mime_type=mime or "application/octet-stream",
        )


@dataclass
class DocumentRecord:
    """
    A document known to the ingestion service.

    Only created after the service acknowledged the upload (or listed
    the document), so ``id`` is always server-assigned.
    """
    id: str
    name: str
    mime_type: str
    size_bytes: int
    category: str
    upload_timestamp: str
    status: DocumentStatus = DocumentStatus.PROCESSING
    processing_message: Optional[str] = None
    storage_ref: Optional[str] = None
    progress: Optional[int] = None
    url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class StatusReport:
    """Parsed response of the status endpoint."""
    id: str
    status: DocumentStatus
    progress: Optional[int] = None
    message: Optional[str] = None


@dataclass
class UploadResult:
    success: bool
    document_id: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChatReply:
    success: bool
    response: str = ""
    session_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ChatMessage:
    content: str
    is_user: bool
    timestamp: str = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class Conversation:
    """An archived chat conversation."""
    id: str
    title: str
    messages: list[ChatMessage]
    timestamp: str
