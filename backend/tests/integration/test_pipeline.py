"""
Integration Tests — ProcessingQueueManager end to end
═════════════════════════════════════════════════════
Real worker pools over the in-memory queue and store. Only the image OCR
engine and (where noted) the search indexer are test doubles.

Coverage targets:
  ✅ PDF and image documents reach 'completed' through all four stages
  ✅ AI service timing out → empty OCR text, fallback classification, completed
  ✅ AI service that never answers is abandoned inside the stage deadline
  ✅ OCR failing on every attempt → document failed, no classification job
  ✅ Validation failures are terminal (one attempt) and drop the staged file
  ✅ Stage timeouts are retried then fail with a timeout reason; a
     TimeoutError raised by the stage itself keeps its own message
  ✅ Indexing retries with backoff up to its attempt budget
  ✅ Reprocessing re-runs the pipeline without moving the file again
  ✅ Job inspection, queue stats and shutdown semantics
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from docflow.core.exceptions import JobNotFoundError, QueueClosedError, QueueNotFoundError
from docflow.schemas.documents import DocumentStatus
from docflow.schemas.jobs import JobState, JobType, ProcessingJobData
from docflow.services.ai_gateway import AIGateway
from docflow.services.indexer import SearchIndexer
from tests.conftest import StaticOcrEngine


def _intake(doc) -> ProcessingJobData:
    return ProcessingJobData(document_id=doc.id, file_path=doc.file_path, job_type=JobType.UPLOAD)


@pytest_asyncio.fixture
async def silent_ai_service():
    """A TCP server that accepts connections and never answers. Yields its base URL."""
    connections: list[asyncio.StreamWriter] = []

    async def _accept(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connections.append(writer)

    server = await asyncio.start_server(_accept, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    yield f"http://127.0.0.1:{port}"

    for writer in connections:
        writer.close()
    server.close()
    await server.wait_closed()


# ─────────────────────────────────────────────────────────────────────────────
# Happy paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestPipelineCompletes:

    async def test_pdf_document_completes(self, make_manager, store, stage_document, temp_dir, make_pdf):
        manager = make_manager()
        doc = await stage_document(make_pdf(temp_dir / "invoice_march.pdf"))
        handle = await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.COMPLETED
        assert stored.ai_classification == "invoice"
        assert stored.confidence_score == 0.7
        assert stored.ocr_text == ""
        assert stored.processed_at is not None
        assert "documents" in Path(stored.file_path).parts
        assert Path(stored.file_path).is_file()

        intake = await manager.get_job_status(JobType.UPLOAD, handle.id)
        assert intake.state is JobState.COMPLETED
        assert intake.progress == 100
        assert intake.attempts == 1
        assert intake.result["file_path"] == stored.file_path

        stats = await manager.get_queue_stats()
        assert set(stats) == {"upload", "ocr", "classification", "indexing"}
        assert all(c.completed == 1 and c.failed == 0 for c in stats.values())

    async def test_image_document_completes_with_entities(self, make_manager, store, stage_document, temp_dir, make_png):
        manager = make_manager()
        doc = await stage_document(make_png(temp_dir / "site_photo.png", size=(800, 600)))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.COMPLETED
        assert stored.ai_classification == "invoice"
        assert stored.ocr_text.startswith("Invoice total")
        assert stored.metadata["entities"]["amounts"] == ["$1,200.00"]
        assert stored.metadata["entities"]["project_codes"] == ["PROJ-0042"]
        assert Path(stored.metadata["thumbnail"]).is_file()

    async def test_many_documents_complete(self, make_manager, store, stage_document, temp_dir, make_pdf):
        manager = make_manager()
        docs = [await stage_document(make_pdf(temp_dir / f"report_{n}.pdf")) for n in range(6)]
        for doc in docs:
            await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        for doc in docs:
            assert (await store.find_by_id(doc.id)).status is DocumentStatus.COMPLETED
        assert (await manager.get_queue_stats())["indexing"].completed == 6

    async def test_pdf_completes_when_ai_service_times_out(
        self, make_manager, test_settings, store, stage_document, temp_dir, make_pdf
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("ai service stalled", request=request)

        settings = test_settings.model_copy(update={"ai_service_url": "http://ai.test"})
        gateway = AIGateway(settings, transport=httpx.MockTransport(handler))
        manager = make_manager(ai=gateway, settings=settings)
        doc = await stage_document(make_pdf(temp_dir / "invoice_march.pdf"))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.COMPLETED
        assert stored.ocr_text == ""
        assert stored.ai_classification == "invoice"
        assert stored.metadata["classification_source"] == "fallback"
        assert (await manager.get_job_status(JobType.OCR, "1")).attempts == 1

    async def test_pdf_completes_when_ai_service_never_answers(
        self, make_manager, test_settings, store, stage_document, temp_dir, make_pdf, silent_ai_service
    ):
        # service calls get the whole stage budget; they must still give up first
        settings = test_settings.model_copy(update={
            "ai_service_url":           silent_ai_service,
            "ocr_timeout":              0.5,
            "ocr_service_timeout":      0.5,
            "classification_timeout":   0.5,
            "classify_service_timeout": 0.5,
        })
        manager = make_manager(ai=AIGateway(settings), settings=settings)
        doc = await stage_document(make_pdf(temp_dir / "invoice_march.pdf"))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.COMPLETED
        assert stored.ocr_text == ""
        assert stored.ai_classification == "invoice"
        assert stored.metadata["classification_source"] == "fallback"
        ocr_job = await manager.get_job_status(JobType.OCR, "1")
        assert ocr_job.state is JobState.COMPLETED
        assert ocr_job.attempts == 1
        assert (await manager.get_job_status(JobType.CLASSIFICATION, "1")).attempts == 1

    async def test_document_locks_are_released_once_finished(
        self, make_manager, store, stage_document, temp_dir, make_pdf
    ):
        manager = make_manager()
        docs = [await stage_document(make_pdf(temp_dir / f"minutes_{n}.pdf")) for n in range(3)]
        for doc in docs:
            await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        assert all((await store.find_by_id(d.id)).status is DocumentStatus.COMPLETED for d in docs)
        assert len(store._locks) == 0

    async def test_reprocessing_keeps_file_in_place(self, make_manager, store, stage_document, temp_dir, make_pdf):
        manager = make_manager()
        doc = await stage_document(make_pdf(temp_dir / "minutes.pdf"))
        await manager.add_document_processing_job(_intake(doc))
        await manager.start()
        assert await manager.wait_until_idle(timeout=10)
        first_path = (await store.find_by_id(doc.id)).file_path

        reset = await store.reset_for_reprocessing(doc.id)
        await manager.add_document_processing_job(_intake(reset))
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.COMPLETED
        assert stored.file_path == first_path
        assert stored.ai_classification == "report"


# ─────────────────────────────────────────────────────────────────────────────
# Failure paths
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestPipelineFailures:

    async def test_ocr_failing_twice_fails_document(
        self, make_manager, make_gateway, store, stage_document, temp_dir, make_png
    ):
        engine = StaticOcrEngine(error=RuntimeError("tesseract crashed"))
        manager = make_manager(ai=make_gateway(engine))
        doc = await stage_document(make_png(temp_dir / "notice.png"))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.FAILED
        assert stored.error_message == "ocr failed: tesseract crashed"
        assert stored.metadata["error"] == {"stage": "ocr", "message": "tesseract crashed"}
        assert engine.calls == 2

        stats = await manager.get_queue_stats()
        assert stats["ocr"].failed == 1
        assert stats["classification"].waiting == 0
        assert stats["classification"].completed == 0

        job = await manager.get_job_status("ocr", "1")
        assert job.state is JobState.FAILED
        assert job.attempts == 2
        assert job.failed_reason == "tesseract crashed"

    async def test_validation_failure_is_terminal(self, make_manager, store, stage_document, temp_dir):
        manager = make_manager()
        src = temp_dir / "blank.pdf"
        src.write_bytes(b"%PDF-1.4")
        doc = await stage_document(src)
        handle = await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.FAILED
        assert stored.error_message == "upload failed: File is empty"

        job = await manager.get_job_status(JobType.UPLOAD, handle.id)
        assert job.state is JobState.FAILED
        assert job.attempts == 1
        assert (await manager.get_queue_stats())["ocr"].waiting == 0

    async def test_rejected_upload_is_removed_from_temp(self, make_manager, store, stage_document, temp_dir):
        manager = make_manager()
        src = temp_dir / "blank.pdf"
        src.write_bytes(b"%PDF-1.4")
        doc = await stage_document(src)
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        assert (await store.find_by_id(doc.id)).status is DocumentStatus.FAILED
        assert not src.exists()

    async def test_timeout_error_raised_by_a_stage_keeps_its_message(
        self, make_manager, make_gateway, store, stage_document, temp_dir, make_png
    ):
        engine = StaticOcrEngine(error=TimeoutError("tesseract subprocess timed out"))
        manager = make_manager(ai=make_gateway(engine))
        doc = await stage_document(make_png(temp_dir / "notice.png"))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        job = await manager.get_job_status(JobType.OCR, "1")
        assert job.state is JobState.FAILED
        assert job.attempts == 2
        assert job.failed_reason == "tesseract subprocess timed out"
        assert (await store.find_by_id(doc.id)).error_message == "ocr failed: tesseract subprocess timed out"

    async def test_stage_timeout_is_retried_then_fails(
        self, make_manager, make_gateway, test_settings, store, stage_document, temp_dir, make_png
    ):
        settings = test_settings.model_copy(update={"ocr_timeout": 0.05})
        engine = StaticOcrEngine(text="never returned", delay=1.0)
        manager = make_manager(ai=make_gateway(engine, settings=settings), settings=settings)
        doc = await stage_document(make_png(temp_dir / "slow.png"))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        job = await manager.get_job_status(JobType.OCR, "1")
        assert job.state is JobState.FAILED
        assert job.attempts == 2
        assert job.failed_reason == "timed out after 0.05s"
        assert (await store.find_by_id(doc.id)).error_message == "ocr failed: timed out after 0.05s"

    async def test_indexing_uses_its_full_attempt_budget(self, make_manager, store, stage_document, temp_dir, make_pdf):
        indexer = AsyncMock(spec=SearchIndexer)
        indexer.index_document.side_effect = ConnectionError("search cluster unreachable")
        manager = make_manager(indexer=indexer)
        doc = await stage_document(make_pdf(temp_dir / "report.pdf"))
        await manager.add_document_processing_job(_intake(doc))

        await manager.start()
        assert await manager.wait_until_idle(timeout=10)

        assert indexer.index_document.await_count == 3
        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.FAILED
        assert stored.error_message == "indexing failed: search cluster unreachable"
        assert stored.ai_classification == "report"


# ─────────────────────────────────────────────────────────────────────────────
# Inspection & lifecycle
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.integration
class TestManagerApi:

    async def test_enqueue_returns_handles_per_kind(self, make_manager):
        manager = make_manager()
        data = ProcessingJobData(document_id=1, file_path="/tmp/a.pdf", job_type=JobType.UPLOAD)

        ocr = await manager.add_ocr_job(data)
        classification = await manager.add_classification_job(data)
        indexing = await manager.add_indexing_job(data)

        assert (ocr.kind, classification.kind, indexing.kind) == (
            JobType.OCR, JobType.CLASSIFICATION, JobType.INDEXING,
        )
        status = await manager.get_job_status("classification", classification.id)
        assert status.state is JobState.WAITING
        assert status.data.job_type is JobType.CLASSIFICATION

    async def test_unknown_queue(self, make_manager):
        manager = make_manager()
        with pytest.raises(QueueNotFoundError):
            await manager.get_job_status("thumbnails", "1")
        with pytest.raises(QueueNotFoundError):
            await manager.enqueue("thumbnails", ProcessingJobData(
                document_id=1, file_path="/tmp/a.pdf", job_type=JobType.UPLOAD,
            ))

    async def test_unknown_job(self, make_manager):
        with pytest.raises(JobNotFoundError):
            await make_manager().get_job_status(JobType.OCR, "12345")

    async def test_stats_before_any_work(self, make_manager):
        stats = await make_manager().get_queue_stats()
        assert all(c.model_dump() == {"waiting": 0, "active": 0, "completed": 0, "failed": 0} for c in stats.values())

    async def test_close_is_idempotent_and_rejects_new_work(self, make_manager):
        manager = make_manager()
        await manager.start()
        await manager.start()
        assert manager.is_running

        await manager.close_queues()
        await manager.close_queues()

        assert not manager.is_running
        with pytest.raises(QueueClosedError):
            await manager.add_document_processing_job(ProcessingJobData(
                document_id=1, file_path="/tmp/a.pdf", job_type=JobType.UPLOAD,
            ))
