"""
Shared pytest fixtures for docsync tests.

Provides an in-memory fake of the ingestion service so orchestrator
tests never touch the network or sleep for real.
"""

import asyncio
from dataclasses import replace
from typing import Optional

import pytest

from docsync.errors import NetworkError
from docsync.kvstore import KeyValueStore
from docsync.orchestrator import SyncOrchestrator
from docsync.storage import FallbackBackend
from docsync.types import (
    ChatReply,
    DocumentRecord,
    DocumentStatus,
    StatusReport,
    UploadFile,
    UploadResult,
)


class FakeIngestionService:
    """
    Scriptable stand-in for IngestionService.

    - upload assigns ids doc-1, doc-2, ... unless `upload_result` is set
    - status pops from a per-id list of statuses (last one repeats)
    - `status_gate` can hold status calls until the test releases them
    """

    def __init__(self):
        self.upload_calls: list[tuple[str, str]] = []
        self.status_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.chat_calls: list[tuple[str, Optional[str]]] = []
        self.statuses: dict[str, list] = {}
        self.upload_result: Optional[UploadResult] = None
        self.upload_error: Optional[Exception] = None
        self.delete_result: bool = True
        self.delete_error: Optional[Exception] = None
        self.listed: list[DocumentRecord] = []
        self.downloads: dict[str, bytes] = {}
        self.chat_session_id = "session-1"
        self.status_gate: Optional[asyncio.Event] = None
        self._next_id = 0

    async def upload(self, file: UploadFile, category: str) -> UploadResult:
        self.upload_calls.append((file.name, category))
        if self.upload_error is not None:
            raise self.upload_error
        if self.upload_result is not None:
            return self.upload_result
        self._next_id += 1
        return UploadResult(success=True, document_id=f"doc-{self._next_id}", message="Document uploaded")

    async def status(self, document_id: str) -> StatusReport:
        self.status_calls.append(document_id)
        if self.status_gate is not None:
            await self.status_gate.wait()
        queue = self.statuses.get(document_id) or [DocumentStatus.PROCESSING]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return StatusReport(id=document_id, status=item, message=f"{item.value}")

    async def list_documents(self) -> list[DocumentRecord]:
        return [replace(r) for r in self.listed]

    async def delete(self, document_id: str) -> bool:
        self.delete_calls.append(document_id)
        if self.delete_error is not None:
            raise self.delete_error
        return self.delete_result

    async def download(self, document_id: str) -> bytes:
        if document_id not in self.downloads:
            raise NetworkError(f"no download for {document_id}", attempts=1)
        return self.downloads[document_id]

    async def chat(self, message: str, session_id: Optional[str] = None) -> ChatReply:
        self.chat_calls.append((message, session_id))
        return ChatReply(
            success=True,
            response=f"echo: {message}",
            session_id=session_id or self.chat_session_id,
        )


@pytest.fixture
def kv():
    store = KeyValueStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def fake_service():
    return FakeIngestionService()


@pytest.fixture
def fallback_backend(kv):
    return FallbackBackend(kv)


@pytest.fixture
def orchestrator(fake_service, fallback_backend, kv):
    """Orchestrator over the fake service with a fast poll interval."""
    return SyncOrchestrator(fake_service, fallback_backend, kv, poll_interval=0.01)


@pytest.fixture
def pdf_file():
    return UploadFile(name="Q4_2023_Tax_Return.pdf", content=b"%PDF-1.7 fake", mime_type="application/pdf")


def _make_record(id: str, name: str = "report.pdf", category: str = "Other",
                status: DocumentStatus = DocumentStatus.PROCESSING) -> DocumentRecord:
    return DocumentRecord(
        id=id,
        name=name,
        mime_type="application/pdf",
        size_bytes=1234,
        category=category,
        upload_timestamp="2024-01-15T10:30:00",
        status=status,
    )


@pytest.fixture
def make_record():
    """Factory for DocumentRecords with sensible defaults."""
    return _make_record
