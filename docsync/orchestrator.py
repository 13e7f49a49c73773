"""
SyncOrchestrator: the document lifecycle and chat session engine.

Accepts uploads, validates them locally, submits them through the
resilient HTTP client, keeps a local copy in the active storage backend,
registers the acknowledged document and polls its processing status
until it is terminal. Also owns chat session continuity.

Use as an async context manager (or call close()) so that every poll
task is drained on teardown::

    async with SyncOrchestrator.from_config(config) as sync:
        await sync.upload_document(UploadFile.from_path(path), "Receipts")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from .config import SyncConfig
from .errors import (
    ClientError,
    MalformedResponseError,
    NetworkError,
    PollError,
    StorageError,
    ValidationError,
)
from .http_client import ResilientHttpClient
from .kvstore import KeyValueStore
from .polling import DEFAULT_POLL_INTERVAL, PollingScheduler
from .protocol import StorageBackend
from .registry import DocumentRegistry
from .service import IngestionService
from .session import ChatHistory, SessionStore
from .storage import DirectoryPicker, select_backend
from .types import (
    ALL_CATEGORIES,
    ALLOWED_EXTENSIONS,
    DEFAULT_CATEGORIES,
    MAX_UPLOAD_BYTES,
    ChatMessage,
    ChatReply,
    Conversation,
    DocumentCategory,
    DocumentRecord,
    DocumentStatus,
    UploadFile,
    provisional_id,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class StorageInconsistency:
    """A document removed from the registry whose local copy survived."""
    document_id: str
    storage_ref: str
    backend: str
    detected_at: str = field(default_factory=utc_now)


def validate_upload(
    file: UploadFile,
    *,
    max_bytes: int = MAX_UPLOAD_BYTES,
    allowed_extensions: frozenset[str] = ALLOWED_EXTENSIONS,
) -> None:
    """Raise ValidationError if the file may not be uploaded."""
    if file.size > max_bytes:
        raise ValidationError(
            f"{file.name} is too large ({file.size} bytes). "
            f"Maximum size is {max_bytes // (1024 * 1024)}MB."
        )
    if file.extension not in allowed_extensions:
        raise ValidationError(
            f"{file.name}: file type not allowed. "
            f"Allowed: {', '.join(sorted(allowed_extensions))}"
        )


class SyncOrchestrator:
    """Composes service, storage, registry and polling."""

    def __init__(
        self,
        service: IngestionService,
        backend: StorageBackend,
        kv: KeyValueStore,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
        allowed_extensions: frozenset[str] = ALLOWED_EXTENSIONS,
        categories: tuple[DocumentCategory, ...] = DEFAULT_CATEGORIES,
        http: Optional[ResilientHttpClient] = None,
        owns_kv: bool = False,
    ):
        self._service = service
        self._backend = backend
        self._kv = kv
        self._http = http
        self._owns_kv = owns_kv
        self._max_upload_bytes = max_upload_bytes
        self._allowed_extensions = allowed_extensions

        self.categories = categories
        self.registry = DocumentRegistry()
        self.uploading: dict[str, UploadFile] = {}
        self.inconsistencies: list[StorageInconsistency] = []
        self.poll_errors: dict[str, PollError] = {}
        self.session = SessionStore(kv)
        self.history = ChatHistory(kv)
        self.scheduler = PollingScheduler(poll_interval, on_error=self._on_poll_error)
        self._closed = False

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        picker: Optional[DirectoryPicker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SyncOrchestrator":
        """Build the full stack (HTTP client, KV store, backend) from config."""
        kv = KeyValueStore(config.kv_path)
        try:
            backend = select_backend(config, kv, picker)
            http = ResilientHttpClient(
                config.service.api_url,
                config.service.api_key,
                timeout=config.service.timeout,
                max_retries=config.service.max_retries,
                backoff_base=config.service.backoff_base,
                transport=transport,
            )
        except Exception:
            kv.close()
            raise
        return cls(
            IngestionService(http, config.endpoints),
            backend,
            kv,
            poll_interval=config.poll_interval,
            max_upload_bytes=config.max_upload_bytes,
            allowed_extensions=config.allowed_extensions,
            http=http,
            owns_kv=True,
        )

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    async def __aenter__(self) -> "SyncOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Drain every poll task and release owned resources."""
        if self._closed:
            return
        self._closed = True
        await self.scheduler.aclose()
        if self._http is not None:
            await self._http.aclose()
        if self._owns_kv:
            self._kv.close()

    # -------------------------------------------------------------------------
    # Documents
    # -------------------------------------------------------------------------

    def validate(self, file: UploadFile) -> None:
        validate_upload(
            file,
            max_bytes=self._max_upload_bytes,
            allowed_extensions=self._allowed_extensions,
        )

    async def upload_document(self, file: UploadFile, category: str) -> bool:
        """
        Upload a file and start tracking its processing.

        Returns True once the service acknowledged the upload; processing
        progress shows up later in the registry. Returns False if the
        service answered ``success: false``.

        Raises:
            ValidationError: file type or size rejected locally (no network call)
            ClientError / NetworkError / MalformedResponseError: upload failed
            StorageError: the local copy could not be written
        """
        self.validate(file)

        upload_id = provisional_id()
        self.uploading[upload_id] = file
        try:
            result = await self._service.upload(file, category)
        finally:
            del self.uploading[upload_id]

        if not result.success:
            logger.warning("Upload of %s rejected by service: %s", file.name, result.error)
            return False

        document_id = result.document_id
        ref = self._backend.storage_ref(document_id, file.name)
        saved = self._backend.save(file.content, ref, metadata={
            "id": document_id,
            "name": file.name,
            "type": file.mime_type,
            "size": file.size,
            "category": category,
        })
        if not saved:
            raise StorageError(
                f"{file.name} was uploaded as {document_id} but could not be "
                f"stored locally ({self._backend.kind} backend)"
            )

        self.registry.insert(DocumentRecord(
            id=document_id,
            name=file.name,
            mime_type=file.mime_type,
            size_bytes=file.size,
            category=category,
            upload_timestamp=utc_now(),
            status=DocumentStatus.PROCESSING,
            processing_message=result.message,
            storage_ref=ref,
        ))
        logger.info("Uploaded %s as %s (%s)", file.name, document_id, category)
        self.scheduler.start(document_id, self._poll_status)
        return True

    async def _poll_status(self, document_id: str) -> bool:
        """One poll tick. Returns True while the document is still processing."""
        task = asyncio.current_task()
        report = await self._service.status(document_id)

        # Deleted, restarted or finished elsewhere while the request was in flight
        if not self.scheduler.owns(document_id, task):
            logger.debug("Discarding stale status for %s", document_id)
            return False
        return self.apply_status(document_id, report.status, report.message, report.progress)

    def apply_status(
        self,
        document_id: str,
        status: DocumentStatus,
        message: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> bool:
        """Reconcile a status report. Returns True if polling should continue."""
        record = self.registry.get(document_id)
        if record is None or record.is_terminal:
            return False
        if self.registry.update_status(document_id, status, message, progress):
            logger.info("Document %s is %s", document_id, status.value)
        if record.is_terminal:
            self.poll_errors.pop(document_id, None)
            return False
        return True

    def _on_poll_error(self, document_id: str, exc: Exception) -> None:
        error = PollError(f"Status check for {document_id} failed: {exc}")
        error.__cause__ = exc
        self.poll_errors[document_id] = error
        self.registry.set_message(document_id, f"Status check failed: {exc}")
        logger.warning("%s; document left as is", error)

    async def check_status(self, document_id: str) -> Optional[DocumentRecord]:
        """Fetch and apply the current status once, outside the poll loop."""
        report = await self._service.status(document_id)
        if not self.apply_status(document_id, report.status, report.message, report.progress):
            self.scheduler.stop(document_id)
        return self.registry.get(document_id)

    async def wait_until_settled(self, document_id: str, timeout: Optional[float] = None) -> Optional[DocumentRecord]:
        """Wait until polling for `document_id` ends, then return its record.

        Raises TimeoutError after `timeout` seconds; polling carries on.
        """
        await asyncio.wait_for(self.scheduler.wait(document_id), timeout)
        return self.registry.get(document_id)

    async def delete_document(self, document_id: str) -> bool:
        """
        Delete a document remotely, then locally.

        On any remote failure the registry is left untouched and False is
        returned. A local storage failure after the registry removal is
        recorded in ``inconsistencies`` and logged.
        """
        try:
            deleted = await self._service.delete(document_id)
        except (ClientError, NetworkError, MalformedResponseError) as e:
            logger.error("Failed to delete %s: %s", document_id, e)
            return False
        if not deleted:
            return False

        self.scheduler.stop(document_id)
        self.poll_errors.pop(document_id, None)
        record = self.registry.remove(document_id)
        if record is not None and record.storage_ref:
            if not self._backend.delete(record.storage_ref):
                inconsistency = StorageInconsistency(
                    document_id=document_id,
                    storage_ref=record.storage_ref,
                    backend=self._backend.kind,
                )
                self.inconsistencies.append(inconsistency)
                logger.error(
                    "Document %s deleted but its local copy %s could not be removed",
                    document_id, record.storage_ref,
                )
        logger.info("Deleted document %s", document_id)
        return True

    async def refresh_documents(self, *, resume_polling: bool = True) -> list[DocumentRecord]:
        """Replace the registry with the service's document list.

        Local storage references are kept for known documents and
        rediscovered for the rest; polling restarts for anything still
        processing.
        """
        records = await self._service.list_documents()
        stored = set(self._backend.list())
        for record in records:
            known = self.registry.get(record.id)
            if known is not None and known.storage_ref:
                record.storage_ref = known.storage_ref
            else:
                ref = self._backend.storage_ref(record.id, record.name)
                if ref in stored:
                    record.storage_ref = ref

        self.scheduler.stop_all()
        self.registry.replace_all(records)
        if resume_polling:
            for document_id in self.registry.non_terminal_ids():
                self.scheduler.start(document_id, self._poll_status)
        return list(self.registry)

    async def download_document(self, document_id: str) -> bytes:
        """Document bytes, from the local copy if present, else the service."""
        record = self.registry.get(document_id)
        if record is not None and record.storage_ref:
            data = self._backend.read(record.storage_ref)
            if data is not None:
                return data
        return await self._service.download(document_id)

    def get_filtered_documents(self, category: str = ALL_CATEGORIES, search_term: str = "") -> list[DocumentRecord]:
        return self.registry.filter(category, search_term)

    # -------------------------------------------------------------------------
    # Chat session
    # -------------------------------------------------------------------------

    async def send_message(self, text: str) -> ChatReply:
        """Send a chat message within the current conversation."""
        if not text.strip():
            raise ValidationError("Message is empty")
        self.session.add_message(ChatMessage(content=text, is_user=True))

        reply = await self._service.chat(text, self.session.token)
        if reply.session_id:
            self.session.set_token(reply.session_id)
        if reply.success:
            self.session.add_message(ChatMessage(content=reply.response, is_user=False))
        else:
            logger.warning("Chat request failed: %s", reply.error)
        return reply

    def clear_conversation(self) -> Optional[Conversation]:
        """Archive the open conversation and invalidate its token."""
        conversation = self.history.archive(self.session.messages())
        self.session.clear()
        return conversation


