"""
Unit Tests — stage handlers & JobContext
════════════════════════════════════════
Handlers are called directly with a mocked queue and a mocked hand-off, so
each test covers exactly one attempt of one stage.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from docflow.core.exceptions import DocumentNotFoundError, FileValidationError
from docflow.schemas.documents import DocumentRecord, DocumentStatus
from docflow.schemas.jobs import JobHandle, JobType, ProcessingJobData
from docflow.services.indexer import LoggingIndexer
from docflow.workers.queue import Job
from docflow.workers.stages import (
    JobContext,
    PipelineServices,
    run_classification,
    run_indexing,
    run_intake,
    run_ocr,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _job(kind: JobType, data: ProcessingJobData, job_id: str = "1") -> Job:
    return Job(id=job_id, kind=kind, data=data, max_attempts=3)


def _ctx(job: Job) -> JobContext:
    queue = MagicMock()
    queue.update_progress = AsyncMock()
    return JobContext(job, queue)


def _record(doc_id: int, path: str, status: DocumentStatus, **fields) -> DocumentRecord:
    name = Path(path).name
    return DocumentRecord(
        id=doc_id, filename=name, original_filename=name, file_size=256,
        mime_type="application/pdf", file_path=path, status=status, **fields,
    )


@pytest.fixture
def hand_off():
    async def _hand_off(kind, data):
        return JobHandle(id="99", kind=kind)
    return AsyncMock(side_effect=_hand_off)


@pytest.fixture
def services(store, files, gateway, test_settings, hand_off) -> PipelineServices:
    return PipelineServices(
        store=store,
        files=files,
        ai=gateway,
        indexer=LoggingIndexer(),
        upload_dir=test_settings.upload_dir,
        hand_off=hand_off,
    )


# ─────────────────────────────────────────────────────────────────────────────
# JobContext
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestJobContext:

    async def test_progress_is_monotonic(self):
        ctx = _ctx(_job(JobType.OCR, ProcessingJobData(document_id=1, file_path="a.pdf", job_type=JobType.OCR)))
        for value in (10, 5, 50, 50, 30, 150):
            await ctx.progress(value)

        reported = [call.args[1] for call in ctx._queue.update_progress.await_args_list]
        assert reported == [10, 50, 100]
        assert ctx.current_progress == 100
        assert ctx.job.progress == 100


# ─────────────────────────────────────────────────────────────────────────────
# Intake
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestIntakeStage:

    async def test_relocates_and_hands_off_ocr(self, services, store, stage_document, temp_dir, make_png, hand_off):
        src = make_png(temp_dir / "platform.png", size=(640, 480))
        doc = await stage_document(src)
        data = ProcessingJobData(document_id=doc.id, file_path=str(src), job_type=JobType.UPLOAD)
        ctx = _ctx(_job(JobType.UPLOAD, data))

        result = await run_intake(ctx, data, services)

        final = Path(result["file_path"])
        assert final.is_file()
        assert not src.exists()
        assert "documents" in final.parts
        assert Path(result["thumbnail"]).is_file()
        assert ctx.current_progress == 100

        stored = await store.find_by_id(doc.id)
        assert stored.status is DocumentStatus.PROCESSING
        assert stored.file_path == str(final)
        assert stored.metadata["dimensions"] == {"width": 640, "height": 480}
        assert stored.metadata["thumbnail"] == result["thumbnail"]

        kind, next_data = hand_off.await_args.args
        assert kind is JobType.OCR
        assert next_data.file_path == str(final)

    async def test_invalid_file_is_rejected_and_removed(self, services, stage_document, temp_dir, hand_off):
        src = temp_dir / "tiny.pdf"
        src.write_bytes(b"%PDF")
        doc = await stage_document(src)
        data = ProcessingJobData(document_id=doc.id, file_path=str(src), job_type=JobType.UPLOAD)

        with pytest.raises(FileValidationError):
            await run_intake(_ctx(_job(JobType.UPLOAD, data)), data, services)
        hand_off.assert_not_awaited()
        assert not src.exists()

    async def test_resumes_when_file_already_moved(self, services, stage_document, temp_dir, make_pdf):
        """A retry after the move succeeded finds the file at its final path."""
        src = make_pdf(temp_dir / "retry.pdf")
        doc = await stage_document(src)
        data = ProcessingJobData(document_id=doc.id, file_path=str(src), job_type=JobType.UPLOAD)
        job = _job(JobType.UPLOAD, data)

        first = await run_intake(_ctx(job), data, services)
        second = await run_intake(_ctx(job), data, services)
        assert first["file_path"] == second["file_path"]

    async def test_missing_document(self, services, temp_dir):
        data = ProcessingJobData(document_id=404, file_path=str(temp_dir / "x.pdf"), job_type=JobType.UPLOAD)
        with pytest.raises(DocumentNotFoundError):
            await run_intake(_ctx(_job(JobType.UPLOAD, data)), data, services)


# ─────────────────────────────────────────────────────────────────────────────
# OCR, classification, indexing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLaterStages:

    async def test_ocr_forwards_text(self, services, store, make_png, tmp_path, hand_off):
        path = make_png(tmp_path / "notice.png")
        await store.add(_record(1, str(path), DocumentStatus.PROCESSING))
        data = ProcessingJobData(document_id=1, file_path=str(path), job_type=JobType.OCR)

        result = await run_ocr(_ctx(_job(JobType.OCR, data)), data, services)

        assert result["next_job"] == "99"
        stored = await store.find_by_id(1)
        assert stored.ocr_text.startswith("Invoice total")
        kind, next_data = hand_off.await_args.args
        assert kind is JobType.CLASSIFICATION
        assert next_data.metadata["ocr_text"] == stored.ocr_text

    async def test_ocr_skips_formats_without_ocr(self, services, store, tmp_path, hand_off):
        path = tmp_path / "viaduct.dwg"
        path.write_bytes(b"AC1032" * 20)
        await store.add(_record(2, str(path), DocumentStatus.PROCESSING))
        data = ProcessingJobData(document_id=2, file_path=str(path), job_type=JobType.OCR)

        await run_ocr(_ctx(_job(JobType.OCR, data)), data, services)

        assert (await store.find_by_id(2)).ocr_text == ""
        assert hand_off.await_args.args[0] is JobType.CLASSIFICATION

    async def test_failed_document_is_skipped(self, services, store, hand_off):
        await store.add(_record(3, "/uploads/documents/2024/03/a.pdf", DocumentStatus.FAILED))
        data = ProcessingJobData(document_id=3, file_path="/uploads/documents/2024/03/a.pdf", job_type=JobType.OCR)

        result = await run_ocr(_ctx(_job(JobType.OCR, data)), data, services)

        assert result["skipped"] is True
        hand_off.assert_not_awaited()

    async def test_classification_falls_back_to_stored_text(self, services, store, hand_off):
        await store.add(_record(4, "/uploads/documents/2024/03/scan.pdf", DocumentStatus.PROCESSING,
                                ocr_text="Maintenance agreement for rolling stock"))
        data = ProcessingJobData(document_id=4, file_path="/uploads/documents/2024/03/scan.pdf",
                                 job_type=JobType.CLASSIFICATION)

        result = await run_classification(_ctx(_job(JobType.CLASSIFICATION, data)), data, services)

        assert result["document_type"] == "contract"
        stored = await store.find_by_id(4)
        assert stored.ai_classification == "contract"
        assert stored.confidence_score == 0.7
        assert stored.metadata["classification_source"] == "fallback"
        assert stored.metadata["entities"] == {"dates": [], "amounts": [], "project_codes": []}
        assert hand_off.await_args.args[0] is JobType.INDEXING

    async def test_indexing_completes_document(self, services, store, hand_off):
        await store.add(_record(5, "/uploads/documents/2024/03/a.pdf", DocumentStatus.PROCESSING))
        data = ProcessingJobData(document_id=5, file_path="/uploads/documents/2024/03/a.pdf",
                                 job_type=JobType.INDEXING)

        result = await run_indexing(_ctx(_job(JobType.INDEXING, data)), data, services)

        assert result == {"indexed": True}
        stored = await store.find_by_id(5)
        assert stored.status is DocumentStatus.COMPLETED
        assert stored.processed_at is not None
        hand_off.assert_not_awaited()
