"""
Pipeline Stages
═══════════════

  upload (intake) → ocr → classification → indexing

Each handler runs ONE attempt of ONE job and, on success, enqueues exactly
one job of the next kind. Handlers never decide about retries: they raise,
and the queue manager applies the kind's policy (retry with backoff, or mark
the document failed once the budget is spent or the error is terminal).

Every stage starts by loading the document. If it is already 'failed' the
stage completes as skipped and hands off nothing, so a document that failed
in one branch of its pass is never picked up again in the same pass.

Progress checkpoints (observability only):
  intake          10 → 25 → 50 → 75 → 100
  ocr             10 → 80 → 100
  classification  10 → 30 → 80 → 90 → 100
  indexing        25 → 50 → 100
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from docflow.core.exceptions import DocumentNotFoundError, FileValidationError
from docflow.processing.files import FileProcessor, final_destination, thumbnail_path
from docflow.schemas.documents import DocumentRecord, DocumentStatus
from docflow.schemas.jobs import JobHandle, JobType, ProcessingJobData
from docflow.services.ai_gateway import AIGateway
from docflow.services.document_store import DocumentStore
from docflow.services.indexer import SearchIndexer
from docflow.workers.queue import Job, WorkQueue

logger = logging.getLogger(__name__)

HandOff = Callable[[JobType, ProcessingJobData], Awaitable[JobHandle]]


@dataclass
class PipelineServices:
    """Collaborators shared by every stage handler."""
    store:      DocumentStore
    files:      FileProcessor
    ai:         AIGateway
    indexer:    SearchIndexer
    upload_dir: str
    hand_off:   HandOff


class JobContext:
    """Per-attempt view of a job. A retry gets a fresh context."""

    def __init__(self, job: Job, queue: WorkQueue) -> None:
        self.job = job
        self._queue = queue
        self._progress = 0

    @property
    def current_progress(self) -> int:
        return self._progress

    async def progress(self, value: int) -> None:
        """Monotonic within the attempt: lower values are ignored."""
        value = max(0, min(100, int(value)))
        if value <= self._progress:
            return
        self._progress = value
        self.job.progress = value
        await self._queue.update_progress(self.job, value)


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


async def _load(services: PipelineServices, document_id: int) -> DocumentRecord:
    doc = await services.store.find_by_id(document_id)
    if doc is None:
        raise DocumentNotFoundError(document_id)
    return doc


def _already_relocated(path: Path, upload_dir: str) -> bool:
    root = (Path(upload_dir) / "documents").resolve()
    return root in path.resolve().parents


def _skipped(job: Job, doc: DocumentRecord) -> dict[str, Any]:
    logger.info(
        "Stage skipped, document already failed | kind=%s job=%s doc=%s",
        job.kind.value, job.id, doc.id,
    )
    return {"skipped": True, "reason": f"document {doc.status.value}"}


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

async def run_intake(ctx: JobContext, data: ProcessingJobData, services: PipelineServices) -> dict[str, Any]:
    t0 = time.monotonic()
    await ctx.progress(10)

    doc = await _load(services, data.document_id)
    if doc.status == DocumentStatus.FAILED:
        return _skipped(ctx.job, doc)

    source = Path(data.file_path)
    if _already_relocated(source, services.upload_dir):
        # reprocessing pass: the file already sits in its permanent location
        final_path = source
    else:
        # the date bucket comes from job creation so every retry targets one path
        final_path = final_destination(services.upload_dir, data.file_path, ctx.job.created_at)
    if not source.exists() and final_path.exists():
        logger.info("Intake resuming from relocated file | doc=%s path=%s", doc.id, final_path)
        source = final_path

    await services.store.update_status(doc.id, DocumentStatus.PROCESSING)

    try:
        await services.files.ensure_valid(source)
    except FileValidationError:
        # rejected for good: the staged upload is never read again
        if not _already_relocated(source, services.upload_dir):
            await services.files.cleanup_temp_file(source)
        raise
    await ctx.progress(25)

    metadata = await services.files.extract_metadata(source)
    await ctx.progress(50)

    thumbnail = ""
    try:
        thumbnail = await services.files.generate_thumbnail(source, thumbnail_path(final_path))
    except Exception as exc:
        logger.warning("Thumbnail generation failed | doc=%s error=%s", doc.id, exc)
    if thumbnail:
        metadata["thumbnail"] = thumbnail
    await ctx.progress(75)

    if source != final_path:
        await services.files.move_to_final_destination(source, final_path)

    await services.store.update_status(
        doc.id,
        DocumentStatus.PROCESSING,
        file_path=str(final_path),
        metadata=metadata,
        processing_time=_elapsed_ms(t0),
    )
    await ctx.progress(100)

    handle = await services.hand_off(
        JobType.OCR,
        ProcessingJobData(document_id=doc.id, file_path=str(final_path), job_type=JobType.OCR),
    )
    logger.info("Intake completed | doc=%s path=%s next_job=%s", doc.id, final_path, handle.id)
    return {"file_path": str(final_path), "thumbnail": thumbnail or None, "next_job": handle.id}


# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------

async def run_ocr(ctx: JobContext, data: ProcessingJobData, services: PipelineServices) -> dict[str, Any]:
    t0 = time.monotonic()
    await ctx.progress(10)

    doc = await _load(services, data.document_id)
    if doc.status == DocumentStatus.FAILED:
        return _skipped(ctx.job, doc)

    if services.ai.supports_ocr(data.file_path):
        ocr_text = await services.ai.perform_ocr(data.file_path)
    else:
        logger.info("No OCR for this format | doc=%s path=%s", doc.id, data.file_path)
        ocr_text = ""
    await ctx.progress(80)

    await services.store.update_status(
        doc.id,
        DocumentStatus.PROCESSING,
        ocr_text=ocr_text,
        processing_time=_elapsed_ms(t0),
    )
    await ctx.progress(100)

    handle = await services.hand_off(
        JobType.CLASSIFICATION,
        ProcessingJobData(
            document_id=doc.id,
            file_path=data.file_path,
            job_type=JobType.CLASSIFICATION,
            metadata={"ocr_text": ocr_text},
        ),
    )
    logger.info("OCR completed | doc=%s chars=%d next_job=%s", doc.id, len(ocr_text), handle.id)
    return {"text_length": len(ocr_text), "next_job": handle.id}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

async def run_classification(ctx: JobContext, data: ProcessingJobData, services: PipelineServices) -> dict[str, Any]:
    t0 = time.monotonic()
    await ctx.progress(10)

    doc = await _load(services, data.document_id)
    if doc.status == DocumentStatus.FAILED:
        return _skipped(ctx.job, doc)

    ocr_text = data.metadata.get("ocr_text")
    if ocr_text is None:
        ocr_text = doc.ocr_text or ""
    await ctx.progress(30)

    result = await services.ai.classify_document(ocr_text, data.file_path)
    await ctx.progress(80)

    metadata: dict[str, Any] = {"classification_source": result.source}
    if result.entities is not None:
        metadata["entities"] = result.entities.model_dump()
    if result.similar_documents:
        metadata["similar_documents"] = result.similar_documents

    await services.store.update_status(
        doc.id,
        DocumentStatus.PROCESSING,
        ai_classification=result.document_type,
        confidence_score=result.confidence,
        processing_time=_elapsed_ms(t0),
        metadata=metadata,
    )
    await ctx.progress(90)

    handle = await services.hand_off(
        JobType.INDEXING,
        ProcessingJobData(document_id=doc.id, file_path=data.file_path, job_type=JobType.INDEXING),
    )
    await ctx.progress(100)

    logger.info(
        "Classification completed | doc=%s type=%s confidence=%.2f next_job=%s",
        doc.id, result.document_type, result.confidence, handle.id,
    )
    return {
        "document_type": result.document_type,
        "confidence":    result.confidence,
        "next_job":      handle.id,
    }


# ---------------------------------------------------------------------------
# Indexing
# ---------------------------------------------------------------------------

async def run_indexing(ctx: JobContext, data: ProcessingJobData, services: PipelineServices) -> dict[str, Any]:
    t0 = time.monotonic()
    await ctx.progress(25)

    doc = await _load(services, data.document_id)
    if doc.status == DocumentStatus.FAILED:
        return _skipped(ctx.job, doc)
    await ctx.progress(50)

    await services.indexer.index_document(doc)
    await services.store.update_status(
        doc.id,
        DocumentStatus.COMPLETED,
        processing_time=_elapsed_ms(t0),
    )
    await ctx.progress(100)

    logger.info("Document processing completed | doc=%s", doc.id)
    return {"indexed": True}


StageHandler = Callable[[JobContext, ProcessingJobData, PipelineServices], Awaitable[dict[str, Any]]]

STAGES: dict[JobType, StageHandler] = {
    JobType.UPLOAD:         run_intake,
    JobType.OCR:            run_ocr,
    JobType.CLASSIFICATION: run_classification,
    JobType.INDEXING:       run_indexing,
}
