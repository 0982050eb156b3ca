"""
Pipeline error taxonomy.

  FileValidationError       — bad upload (missing, empty, too large, wrong type).
                              Terminal: the document is failed, never retried.
  UnsupportedFileTypeError  — a stage was handed a format it cannot process.
                              Terminal.
  DocumentNotFoundError     — the Document Status Store has no such row. Terminal.
  DelegateError             — the external OCR / classification service failed.
                              Absorbed by the AI gateway fallbacks; only raised
                              when a caller asks for the delegate directly.
  InvalidStatusTransition   — a write would break the document state machine.
  QueueNotFoundError / JobNotFoundError — job inspection on unknown kind / id.
  QueueClosedError          — enqueue after close_queues().

Anything else raised inside a stage is treated as transient and retried
according to the stage's policy.
"""

from __future__ import annotations

from enum import Enum


class DocflowError(Exception):
    """Base class for all pipeline errors."""


class ValidationCode(str, Enum):
    NOT_FOUND        = "NOT_FOUND"
    EMPTY            = "EMPTY"
    TOO_LARGE        = "TOO_LARGE"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    INVALID          = "INVALID"


class FileValidationError(DocflowError):
    """Uploaded file failed validation."""

    def __init__(self, code: ValidationCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class UnsupportedFileTypeError(DocflowError):
    """File extension not handled by the requested operation."""

    def __init__(self, extension: str, operation: str = "processing") -> None:
        super().__init__(f"Unsupported file type for {operation}: {extension or '<none>'}")
        self.extension = extension
        self.operation = operation


class DelegateError(DocflowError):
    """External AI service call failed (network, timeout, non-2xx)."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class DocumentNotFoundError(DocflowError):
    def __init__(self, document_id: int) -> None:
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class InvalidStatusTransition(DocflowError):
    def __init__(self, document_id: int, current: str, requested: str) -> None:
        super().__init__(
            f"Document {document_id}: illegal status transition {current} -> {requested}"
        )
        self.document_id = document_id
        self.current = current
        self.requested = requested


class QueueNotFoundError(DocflowError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"Queue {kind} not found")
        self.kind = kind


class JobNotFoundError(DocflowError):
    def __init__(self, kind: str, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found in queue {kind}")
        self.kind = kind
        self.job_id = job_id


class QueueClosedError(DocflowError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"Queue {kind} is closed")
        self.kind = kind


# Errors that fail a job on the first attempt, regardless of its retry budget.
TERMINAL_ERRORS: tuple[type[Exception], ...] = (
    FileValidationError,
    UnsupportedFileTypeError,
    DocumentNotFoundError,
    InvalidStatusTransition,
)


def is_terminal(exc: BaseException) -> bool:
    return isinstance(exc, TERMINAL_ERRORS)
