"""
Processing Job — Pydantic Schemas

A job is one attempt-bounded unit of work for ONE pipeline stage of ONE
document. Jobs live in the work queue only; the Document Status Store is
the source of truth for the document itself.

Job state machine:
  waiting → active → completed
  waiting → active → waiting (retry, delayed) → active → … → failed
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobType(str, Enum):
    """Pipeline stages, in execution order."""
    UPLOAD         = "upload"
    OCR            = "ocr"
    CLASSIFICATION = "classification"
    INDEXING       = "indexing"


class JobState(str, Enum):
    WAITING   = "waiting"
    ACTIVE    = "active"
    COMPLETED = "completed"
    FAILED    = "failed"


class ProcessingJobData(BaseModel):
    """
    Payload carried by every job.

    metadata is stage-specific: the OCR stage forwards
    {"ocr_text": ...} so classification need not re-fetch it.
    """
    document_id: int
    file_path:   str
    job_type:    JobType
    metadata:    dict[str, Any] = Field(default_factory=dict)


class JobHandle(BaseModel):
    """Returned by every enqueue operation."""
    id:   str
    kind: JobType


class JobStatus(BaseModel):
    """Snapshot returned by get_job_status()."""
    id:            str
    kind:          JobType
    state:         JobState
    progress:      int = Field(0, ge=0, le=100)
    data:          ProcessingJobData
    attempts:      int
    max_attempts:  int
    created_at:    datetime
    started_at:    datetime | None = None
    completed_at:  datetime | None = None
    failed_reason: str | None = None
    result:        dict[str, Any] | None = None


class QueueCounts(BaseModel):
    waiting:   int = 0
    active:    int = 0
    completed: int = 0
    failed:    int = 0
