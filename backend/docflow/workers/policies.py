"""
Per-kind job policy: concurrency, retry budget, backoff, timeout, retention.

Defaults (overridable through Settings):

  kind            concurrency  attempts  backoff              timeout
  upload          10           3         exponential, 2 s     none
  ocr             5            2         fixed 5 s            120 s
  classification  5            2         fixed 3 s            60 s
  indexing        10           3         exponential, 1 s     none
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from docflow.core.config import Settings
from docflow.schemas.jobs import JobType


class BackoffKind(str, Enum):
    FIXED       = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class JobPolicy:
    kind:           JobType
    concurrency:    int
    max_attempts:   int
    backoff:        BackoffKind
    backoff_delay:  float            # seconds; the base for exponential
    timeout:        float | None     # seconds per attempt; None = unbounded
    keep_completed: int = 100
    keep_failed:    int = 50

    def backoff_for(self, attempts_made: int) -> float:
        """
        Delay before the next attempt, given how many attempts have run.
        Exponential: base × 2^(n-1), so 2 s, 4 s, 8 s … for a 2 s base.
        """
        if self.backoff is BackoffKind.FIXED:
            return self.backoff_delay
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))


def build_policies(settings: Settings) -> dict[JobType, JobPolicy]:
    keep = {"keep_completed": settings.keep_completed_jobs, "keep_failed": settings.keep_failed_jobs}
    return {
        JobType.UPLOAD: JobPolicy(
            kind=JobType.UPLOAD,
            concurrency=settings.intake_concurrency,
            max_attempts=settings.intake_attempts,
            backoff=BackoffKind.EXPONENTIAL,
            backoff_delay=settings.intake_backoff_delay,
            timeout=None,
            **keep,
        ),
        JobType.OCR: JobPolicy(
            kind=JobType.OCR,
            concurrency=settings.ocr_concurrency,
            max_attempts=settings.ocr_attempts,
            backoff=BackoffKind.FIXED,
            backoff_delay=settings.ocr_backoff_delay,
            timeout=settings.ocr_timeout,
            **keep,
        ),
        JobType.CLASSIFICATION: JobPolicy(
            kind=JobType.CLASSIFICATION,
            concurrency=settings.classification_concurrency,
            max_attempts=settings.classification_attempts,
            backoff=BackoffKind.FIXED,
            backoff_delay=settings.classification_backoff_delay,
            timeout=settings.classification_timeout,
            **keep,
        ),
        JobType.INDEXING: JobPolicy(
            kind=JobType.INDEXING,
            concurrency=settings.indexing_concurrency,
            max_attempts=settings.indexing_attempts,
            backoff=BackoffKind.EXPONENTIAL,
            backoff_delay=settings.indexing_backoff_delay,
            timeout=None,
            **keep,
        ),
    }
