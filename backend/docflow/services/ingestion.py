"""
Document Ingestion Service

Upload ingress for the pipeline:
  1. Read the upload with a hard size ceiling (400 empty / 413 too large)
  2. Check the extension against the configured formats (400)
  3. Stage the bytes under {upload_dir}/temp/<unique name>
  4. Insert the document row (status=pending)
  5. Enqueue the intake job
  6. Return 202 with the document id and the intake job id

A failed enqueue is not fatal: the document is stored as pending and the
stale-document scanner (docflow.workers.tasks) re-queues it.

Reprocessing resets a completed or failed document to pending and enqueues
a fresh intake job for its permanent file.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from fastapi import HTTPException, UploadFile, status

from docflow.core.config import Settings
from docflow.core.exceptions import DocumentNotFoundError, InvalidStatusTransition
from docflow.processing.files import FileProcessor, generate_unique_filename, get_extension, get_mime_type
from docflow.schemas.documents import (
    DocumentReprocessResponse,
    DocumentStatus,
    DocumentUploadResponse,
    NewDocument,
    UploadErrors,
)
from docflow.schemas.jobs import JobType, ProcessingJobData
from docflow.services.document_store import DocumentStore
from docflow.workers.manager import ProcessingQueueManager

logger = logging.getLogger(__name__)


def _sanitize_filename(filename: str) -> str:
    """Basename only, unsafe characters replaced."""
    basename = filename.replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "upload"


class IngestionService:
    """
    Stateless service object.
    All dependencies are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        store:    DocumentStore,
        manager:  ProcessingQueueManager,
        files:    FileProcessor,
        settings: Settings,
    ) -> None:
        self._store    = store
        self._manager  = manager
        self._files    = files
        self._temp_dir = Path(settings.upload_dir) / "temp"
        self._max_size = settings.max_file_size

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def ingest(self, file: UploadFile) -> DocumentUploadResponse:
        data = await self._read_upload(file)
        original_filename = file.filename or "upload"

        if not self._files.is_valid_file_type(original_filename):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.unsupported_file_type(
                    original_filename, self._files.supported_formats
                ).model_dump(),
            )

        filename = generate_unique_filename(_sanitize_filename(original_filename))
        temp_path = self._temp_dir / filename
        await asyncio.get_running_loop().run_in_executor(None, self._write_sync, temp_path, data)

        doc = await self._store.create(NewDocument(
            filename=filename,
            original_filename=original_filename,
            file_size=len(data),
            mime_type=get_mime_type(original_filename),
            file_path=str(temp_path),
            metadata={"extension": get_extension(original_filename)},
        ))
        logger.info(
            "Upload staged | doc=%s file=%s size=%d path=%s",
            doc.id, original_filename, len(data), temp_path,
        )

        job_id: str | None = None
        try:
            handle = await self._manager.add_document_processing_job(ProcessingJobData(
                document_id=doc.id,
                file_path=str(temp_path),
                job_type=JobType.UPLOAD,
            ))
            job_id = handle.id
        except Exception as exc:
            # Non-fatal: the stale-document scanner re-queues pending documents.
            logger.error("Failed to enqueue intake job | doc=%s error=%s", doc.id, exc)

        return DocumentUploadResponse(
            document_id=doc.id,
            status=doc.status,
            job_id=job_id,
            filename=doc.filename,
            original_filename=doc.original_filename,
            file_size=doc.file_size,
            mime_type=doc.mime_type,
            created_at=doc.created_at,
        )

    # ------------------------------------------------------------------
    # Reprocess
    # ------------------------------------------------------------------

    async def reprocess(self, document_id: int) -> DocumentReprocessResponse:
        try:
            doc = await self._store.reset_for_reprocessing(document_id)
        except DocumentNotFoundError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=UploadErrors.document_not_found(document_id).model_dump(),
            )
        except InvalidStatusTransition as exc:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=UploadErrors.invalid_state(document_id, exc.current).model_dump(),
            )

        try:
            handle = await self._manager.add_document_processing_job(ProcessingJobData(
                document_id=doc.id,
                file_path=doc.file_path,
                job_type=JobType.UPLOAD,
            ))
        except Exception as exc:
            logger.error("Failed to enqueue reprocessing | doc=%s error=%s", doc.id, exc)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=UploadErrors.queue_unavailable(str(exc)).model_dump(),
            )

        logger.info("Document re-queued | doc=%s job=%s", doc.id, handle.id)
        return DocumentReprocessResponse(document_id=doc.id, status=DocumentStatus.PENDING, job_id=handle.id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _read_upload(self, file: UploadFile | None) -> bytes:
        """Raises 400 if the file is missing or empty, 413 if too large."""
        if file is None or not file.filename:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )

        data = await file.read()

        if not data:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=UploadErrors.missing_file().model_dump(),
            )
        if len(data) > self._max_size:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=UploadErrors.file_too_large(len(data), self._max_size).model_dump(),
            )
        return data

    @staticmethod
    def _write_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
