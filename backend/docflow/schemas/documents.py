"""
Document Pipeline — Pydantic Schemas

Covers:
  - Document lifecycle status (mirrors documents.status)
  - DocumentRecord — store-agnostic view of a document row
  - File validation result
  - AI classification result + extracted entities
  - Upload / status / reprocess responses
  - Structured error bodies (400, 404, 409, 413, 500, 503)

Design decisions:
  - document_id is always server-generated (SERIAL); never client-supplied.
  - processing_time is the duration of the LAST stage in milliseconds,
    overwritten by every stage (not cumulative).
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Document state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: pending → processing → completed | failed
    """
    PENDING    = "pending"      # staged, intake job not yet picked up
    PROCESSING = "processing"   # a pipeline stage is running
    COMPLETED  = "completed"    # indexing stage finished
    FAILED     = "failed"       # a stage exhausted its retries or hit a terminal error


# Allowed (current → requested) transitions. The pass-reset edges
# (completed/failed → pending) are only taken by reprocessing.
STATUS_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.PENDING: frozenset({DocumentStatus.PROCESSING, DocumentStatus.FAILED}),
    DocumentStatus.PROCESSING: frozenset({
        DocumentStatus.PROCESSING,
        DocumentStatus.COMPLETED,
        DocumentStatus.FAILED,
    }),
    DocumentStatus.COMPLETED: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.FAILED: frozenset({DocumentStatus.PENDING}),
}


def can_transition(current: DocumentStatus, requested: DocumentStatus) -> bool:
    return requested in STATUS_TRANSITIONS[current]


class DocumentRecord(BaseModel):
    """Snapshot of a document as held by the Document Status Store."""
    model_config = ConfigDict(from_attributes=True)

    id:                int
    filename:          str
    original_filename: str
    file_size:         int
    mime_type:         str
    file_path:         str
    status:            DocumentStatus = DocumentStatus.PENDING
    ocr_text:          str | None = None
    ai_classification: str | None = None
    confidence_score:  float | None = None
    processing_time:   int | None = None
    error_message:     str | None = None
    metadata:          dict[str, Any] = Field(default_factory=dict)
    created_at:        datetime | None = None
    updated_at:        datetime | None = None
    processed_at:      datetime | None = None


class NewDocument(BaseModel):
    """Fields supplied by the upload ingress when a document row is created."""
    filename:          str
    original_filename: str
    file_size:         int
    mime_type:         str
    file_path:         str
    metadata:          dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# File validation
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None
    code:  str | None = None


# ---------------------------------------------------------------------------
# AI results
# ---------------------------------------------------------------------------

class ExtractedEntities(BaseModel):
    """Regex-extracted entities. Duplicates are kept on purpose."""
    dates:         list[str] = Field(default_factory=list)
    amounts:       list[str] = Field(default_factory=list)
    project_codes: list[str] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    document_type:     str
    confidence:        float = Field(..., ge=0.0, le=1.0)
    processing_time:   int = Field(0, description="Classification wall time in ms")
    entities:          ExtractedEntities | None = None
    similar_documents: list[str] = Field(default_factory=list)
    source:            str = Field("service", description="service | fallback")


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the file is staged, processing is async.
    """
    document_id:       int
    status:            DocumentStatus = DocumentStatus.PENDING
    job_id:            str | None = Field(None, description="Intake job id; None if enqueue failed")
    filename:          str
    original_filename: str
    file_size:         int
    mime_type:         str
    created_at:        datetime


class DocumentReprocessResponse(BaseModel):
    """HTTP 202 — the document was reset to pending and re-queued."""
    document_id: int
    status:      DocumentStatus = DocumentStatus.PENDING
    job_id:      str | None = None


class DocumentStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    document_id:       int
    status:            DocumentStatus
    ai_classification: str | None = None
    confidence_score:  float | None = None
    processing_time:   int | None = None
    has_ocr_text:      bool = False
    error_message:     str | None = None
    updated_at:        datetime | None = None

    @classmethod
    def from_record(cls, doc: DocumentRecord) -> "DocumentStatusResponse":
        return cls(
            document_id=doc.id,
            status=doc.status,
            ai_classification=doc.ai_classification,
            confidence_score=doc.confidence_score,
            processing_time=doc.processing_time,
            has_ocr_text=bool(doc.ocr_text),
            error_message=doc.error_message,
            updated_at=doc.updated_at,
        )


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code:    str              = Field(..., description="Stable machine-readable code")
    message:       str              = Field(..., description="Human-readable summary")
    details:       list[ErrorDetail] = Field(default_factory=list)
    request_id:    str | None       = Field(None, description="Trace ID for log correlation")


class UploadErrors:
    """Factory for the error bodies raised by the upload and status routes."""

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was uploaded, or the file is empty.",
            details=[ErrorDetail(field="file", message="File is required", code="MISSING_FILE")],
        )

    @staticmethod
    def unsupported_file_type(filename: str, supported: list[str]) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type of '{filename}' is not supported. Allowed types: {', '.join(supported)}",
            details=[ErrorDetail(field="file", message="Unsupported file type", code="UNSUPPORTED_FILE_TYPE")],
        )

    @staticmethod
    def file_too_large(size: int, limit: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"File size {size} bytes exceeds the maximum of {limit} bytes.",
            details=[ErrorDetail(field="file", message="File too large", code="FILE_TOO_LARGE")],
        )

    @staticmethod
    def document_not_found(document_id: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document {document_id} not found.",
        )

    @staticmethod
    def invalid_state(document_id: int, status: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_DOCUMENT_STATE",
            message=f"Document {document_id} is {status}; only completed or failed documents can be reprocessed.",
        )

    @staticmethod
    def queue_unavailable(reason: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="QUEUE_UNAVAILABLE",
            message=f"Processing queue unavailable: {reason}",
        )
