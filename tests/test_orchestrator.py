"""Tests for docsync.orchestrator.SyncOrchestrator."""

import asyncio

import pytest

from docsync.errors import ClientError, NetworkError, StorageError, ValidationError
from docsync.orchestrator import SyncOrchestrator, validate_upload
from docsync.storage import NativeFsBackend
from docsync.types import DocumentStatus, UploadFile, UploadResult


class TestValidation:
    def test_disallowed_extension(self):
        with pytest.raises(ValidationError, match="not allowed"):
            validate_upload(UploadFile("payload.exe", b"MZ"))

    def test_no_extension(self):
        with pytest.raises(ValidationError):
            validate_upload(UploadFile("README", b"text"))

    def test_extension_is_case_insensitive(self):
        validate_upload(UploadFile("SCAN.JPEG", b"jpeg"))

    def test_size_limit(self):
        with pytest.raises(ValidationError, match="too large"):
            validate_upload(UploadFile("big.pdf", b"x" * 11), max_bytes=10)

    def test_exactly_at_limit_is_allowed(self):
        validate_upload(UploadFile("ok.pdf", b"x" * 10), max_bytes=10)


class TestUpload:
    @pytest.mark.asyncio
    async def test_disallowed_extension_makes_no_network_call(self, orchestrator, fake_service):
        with pytest.raises(ValidationError):
            await orchestrator.upload_document(UploadFile("macro.xlsm", b"x"), "Other")
        assert fake_service.upload_calls == []
        assert len(orchestrator.registry) == 0
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_150mb_file_rejected_locally(self, orchestrator, fake_service):
        huge = UploadFile("scan.pdf", bytes(150 * 1024 * 1024))
        with pytest.raises(ValidationError, match="100MB"):
            await orchestrator.upload_document(huge, "Receipts")
        assert fake_service.upload_calls == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_success_registers_processing_record_and_polls(self, orchestrator, fake_service, pdf_file):
        fake_service.statuses["doc-1"] = [DocumentStatus.PROCESSING]

        assert await orchestrator.upload_document(pdf_file, "Tax Returns") is True

        record = orchestrator.registry.get("doc-1")
        assert record.status is DocumentStatus.PROCESSING
        assert record.category == "Tax Returns"
        assert record.size_bytes == pdf_file.size
        assert record.storage_ref == "doc-1"
        assert orchestrator.scheduler.is_polling("doc-1")
        assert orchestrator.uploading == {}
        assert orchestrator.backend.read("doc-1") == pdf_file.content
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_polling_reaches_ready_and_stops(self, orchestrator, fake_service, pdf_file):
        fake_service.statuses["doc-1"] = [
            DocumentStatus.PROCESSING, DocumentStatus.INDEXED, DocumentStatus.READY,
        ]

        await orchestrator.upload_document(pdf_file, "Tax Returns")
        record = await orchestrator.wait_until_settled("doc-1", timeout=2)

        assert record.status is DocumentStatus.READY
        assert orchestrator.scheduler.active_count == 0
        assert len(fake_service.status_calls) == 3
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_polling_reaches_error(self, orchestrator, fake_service, pdf_file):
        fake_service.statuses["doc-1"] = [DocumentStatus.ERROR]

        await orchestrator.upload_document(pdf_file, "Tax Returns")
        record = await orchestrator.wait_until_settled("doc-1", timeout=2)

        assert record.status is DocumentStatus.ERROR
        assert orchestrator.scheduler.active_count == 0
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_service_rejection_returns_false(self, orchestrator, fake_service, pdf_file):
        fake_service.upload_result = UploadResult(success=False, error="Upload failed - server error")

        assert await orchestrator.upload_document(pdf_file, "Other") is False
        assert len(orchestrator.registry) == 0
        assert orchestrator.scheduler.active_count == 0
        assert orchestrator.uploading == {}
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_network_error_propagates_and_clears_provisional(self, orchestrator, fake_service, pdf_file):
        fake_service.upload_error = NetworkError("down", attempts=3)

        with pytest.raises(NetworkError):
            await orchestrator.upload_document(pdf_file, "Other")

        assert orchestrator.uploading == {}
        assert len(orchestrator.registry) == 0
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_uploading_set_holds_file_while_in_flight(self, orchestrator, fake_service, pdf_file):
        seen = []
        real_upload = fake_service.upload

        async def spy(file, category):
            seen.append(dict(orchestrator.uploading))
            return await real_upload(file, category)

        fake_service.upload = spy
        await orchestrator.upload_document(pdf_file, "Other")

        assert len(seen[0]) == 1
        assert list(seen[0].values()) == [pdf_file]
        assert "doc-1" not in seen[0]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_registry_untouched(self, fake_service, kv, pdf_file):
        backend = NativeFsBackend(kv)  # no directory granted
        sync = SyncOrchestrator(fake_service, backend, kv, poll_interval=0.01)

        with pytest.raises(StorageError):
            await sync.upload_document(pdf_file, "Other")

        assert len(sync.registry) == 0
        assert sync.scheduler.active_count == 0
        await sync.close()

    @pytest.mark.asyncio
    async def test_concurrent_uploads_ordered_by_completion(self, orchestrator, fake_service):
        release = {"slow.pdf": asyncio.Event(), "fast.pdf": asyncio.Event()}
        real_upload = fake_service.upload

        async def gated(file, category):
            await release[file.name].wait()
            return await real_upload(file, category)

        fake_service.upload = gated
        slow = asyncio.create_task(orchestrator.upload_document(UploadFile("slow.pdf", b"s"), "Other"))
        fast = asyncio.create_task(orchestrator.upload_document(UploadFile("fast.pdf", b"f"), "Other"))
        await asyncio.sleep(0)
        assert len(orchestrator.uploading) == 2

        release["fast.pdf"].set()
        await fast
        release["slow.pdf"].set()
        await slow

        assert [r.name for r in orchestrator.registry] == ["slow.pdf", "fast.pdf"]
        await orchestrator.close()


class TestPollFailures:
    @pytest.mark.asyncio
    async def test_wait_timeout_keeps_polling(self, orchestrator, fake_service, pdf_file):
        fake_service.statuses["doc-1"] = [DocumentStatus.PROCESSING]
        await orchestrator.upload_document(pdf_file, "Other")

        with pytest.raises(TimeoutError):
            await orchestrator.wait_until_settled("doc-1", timeout=0.05)

        assert orchestrator.scheduler.is_polling("doc-1")
        assert orchestrator.registry.get("doc-1").status is DocumentStatus.PROCESSING

        fake_service.statuses["doc-1"] = [DocumentStatus.READY]
        record = await orchestrator.wait_until_settled("doc-1", timeout=2)
        assert record.status is DocumentStatus.READY
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_poll_error_stops_and_keeps_last_status(self, orchestrator, fake_service, pdf_file):
        fake_service.statuses["doc-1"] = [
            DocumentStatus.INDEXED,
            NetworkError("status endpoint down", attempts=3),
        ]

        await orchestrator.upload_document(pdf_file, "Other")
        record = await orchestrator.wait_until_settled("doc-1", timeout=2)

        assert record.status is DocumentStatus.INDEXED
        assert "Status check failed" in record.processing_message
        assert "doc-1" in orchestrator.poll_errors
        assert orchestrator.scheduler.active_count == 0
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_live_tasks_never_exceed_non_terminal_records(self, orchestrator, fake_service):
        fake_service.statuses["doc-2"] = [DocumentStatus.READY]
        for name in ("a.pdf", "b.pdf", "c.pdf"):
            await orchestrator.upload_document(UploadFile(name, b"x"), "Other")

        await orchestrator.wait_until_settled("doc-2", timeout=2)

        assert orchestrator.scheduler.active_count <= len(orchestrator.registry.non_terminal_ids())
        assert sorted(orchestrator.scheduler.active_ids()) == ["doc-1", "doc-3"]
        await orchestrator.close()


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_cancels_poll_and_discards_in_flight_status(self, orchestrator, fake_service, pdf_file):
        fake_service.statuses["doc-1"] = [DocumentStatus.READY]
        fake_service.status_gate = asyncio.Event()

        await orchestrator.upload_document(pdf_file, "Other")
        # Let the first poll start and block on the gate
        while not fake_service.status_calls:
            await asyncio.sleep(0.005)

        assert await orchestrator.delete_document("doc-1") is True
        fake_service.status_gate.set()
        await asyncio.sleep(0.05)

        assert "doc-1" not in orchestrator.registry
        assert orchestrator.scheduler.active_count == 0
        assert orchestrator.backend.list() == []
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_late_status_for_deleted_record_is_ignored(self, orchestrator, pdf_file):
        await orchestrator.upload_document(pdf_file, "Other")
        await orchestrator.delete_document("doc-1")

        assert orchestrator.apply_status("doc-1", DocumentStatus.READY) is False
        assert orchestrator.registry.get("doc-1") is None
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_remote_failure_leaves_registry_unchanged(self, orchestrator, fake_service, pdf_file):
        await orchestrator.upload_document(pdf_file, "Other")
        before = orchestrator.registry.snapshot()
        fake_service.delete_error = NetworkError("down", attempts=3)

        assert await orchestrator.delete_document("doc-1") is False

        assert orchestrator.registry.snapshot() == before
        assert orchestrator.scheduler.is_polling("doc-1")
        assert orchestrator.backend.read("doc-1") == pdf_file.content
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_client_error_returns_false(self, orchestrator, fake_service, pdf_file):
        await orchestrator.upload_document(pdf_file, "Other")
        fake_service.delete_error = ClientError("not found", 404)

        assert await orchestrator.delete_document("doc-1") is False
        assert len(orchestrator.registry) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_service_refusal_returns_false(self, orchestrator, fake_service, pdf_file):
        await orchestrator.upload_document(pdf_file, "Other")
        fake_service.delete_result = False

        assert await orchestrator.delete_document("doc-1") is False
        assert len(orchestrator.registry) == 1
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_storage_delete_failure_is_reported(self, fake_service, kv, tmp_path, pdf_file):
        granted = tmp_path / "docs"
        granted.mkdir()
        backend = NativeFsBackend(kv)
        backend.grant(granted)
        sync = SyncOrchestrator(fake_service, backend, kv, poll_interval=0.01)
        await sync.upload_document(pdf_file, "Other")

        backend.revoke()
        assert await sync.delete_document("doc-1") is True

        assert "doc-1" not in sync.registry
        assert len(sync.inconsistencies) == 1
        assert sync.inconsistencies[0].document_id == "doc-1"
        assert sync.inconsistencies[0].backend == "native"
        await sync.close()


class TestRefreshAndDownload:
    @pytest.mark.asyncio
    async def test_refresh_replaces_registry_and_resumes_polling(self, orchestrator, fake_service, make_record):
        fake_service.listed = [
            make_record("srv-1", "a.pdf", status=DocumentStatus.READY),
            make_record("srv-2", "b.pdf", status=DocumentStatus.PROCESSING),
        ]

        records = await orchestrator.refresh_documents()

        assert [r.id for r in records] == ["srv-1", "srv-2"]
        assert orchestrator.scheduler.active_ids() == ["srv-2"]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_refresh_without_polling(self, orchestrator, fake_service, make_record):
        fake_service.listed = [make_record("srv-2", status=DocumentStatus.PROCESSING)]
        await orchestrator.refresh_documents(resume_polling=False)
        assert orchestrator.scheduler.active_count == 0
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_refresh_rediscovers_local_copies(self, orchestrator, fake_service, make_record):
        orchestrator.backend.save(b"kept", "srv-1")
        fake_service.listed = [make_record("srv-1", status=DocumentStatus.READY)]

        await orchestrator.refresh_documents()

        assert orchestrator.registry.get("srv-1").storage_ref == "srv-1"
        assert await orchestrator.download_document("srv-1") == b"kept"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_download_falls_back_to_service(self, orchestrator, fake_service):
        fake_service.downloads["remote-only"] = b"from service"
        assert await orchestrator.download_document("remote-only") == b"from service"
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_filtered_documents(self, orchestrator):
        await orchestrator.upload_document(UploadFile("Receipt_March.png", b"x"), "Receipts")
        await orchestrator.upload_document(UploadFile("Invoice_ACME.docx", b"y"), "Invoices")

        assert [r.name for r in orchestrator.get_filtered_documents("Receipts")] == ["Receipt_March.png"]
        assert [r.name for r in orchestrator.get_filtered_documents("all", "acme")] == ["Invoice_ACME.docx"]
        await orchestrator.close()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_close_drains_polls(self, orchestrator):
        for name in ("a.pdf", "b.pdf"):
            await orchestrator.upload_document(UploadFile(name, b"x"), "Other")
        assert orchestrator.scheduler.active_count == 2

        await orchestrator.close()

        assert orchestrator.scheduler.active_count == 0

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, fake_service, fallback_backend, kv):
        async with SyncOrchestrator(fake_service, fallback_backend, kv, poll_interval=0.01) as sync:
            await sync.upload_document(UploadFile("a.pdf", b"x"), "Other")
        assert sync.scheduler.active_count == 0
