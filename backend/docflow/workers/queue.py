"""
Work Queue abstraction
══════════════════════

The queue manager talks to its job store only through WorkQueue, so the
backend is swappable:

  InMemoryWorkQueue  — asyncio, process-local. Default; used by tests and
                       single-process deployments.
  RedisWorkQueue     — durable, shared by several worker processes
                       (docflow.workers.redis_queue).
  CeleryWorkQueue    — the Redis ledger, with every waiting job also
                       published as a Celery task that runs it
                       (docflow.workers.celery_queue).

Semantics every backend honours:
  - One logical queue per JobType; job ids are unique within a kind.
  - dequeue() hands out a waiting job whose available_at has passed,
    marks it active, increments attempts and resets progress to 0.
    claim() does the same for one named job.
  - find_open() returns the waiting or active job of a document, if any.
  - retry() puts the job back to waiting with available_at = now + delay.
  - ack()/fail() move the job to completed/failed. Finished jobs are kept
    in bounded per-kind lists (keep_completed / keep_failed) and the oldest
    are evicted, after which get() returns None for them.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from docflow.core.config import Settings
from docflow.core.exceptions import QueueClosedError
from docflow.schemas.jobs import JobState, JobStatus, JobType, ProcessingJobData, QueueCounts
from docflow.workers.policies import JobPolicy

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Job record
# ---------------------------------------------------------------------------

@dataclass
class Job:
    """
    Mutable job record. Backends hand out copies; the backend's own record
    only changes through the WorkQueue methods.

    available_at is a wall-clock epoch (seconds) so it survives a trip
    through Redis.
    """
    id:            str
    kind:          JobType
    data:          ProcessingJobData
    max_attempts:  int
    state:         JobState = JobState.WAITING
    attempts:      int = 0
    progress:      int = 0
    created_at:    datetime = field(default_factory=_utcnow)
    started_at:    datetime | None = None
    completed_at:  datetime | None = None
    failed_reason: str | None = None
    result:        dict[str, Any] | None = None
    available_at:  float = 0.0

    def copy(self) -> "Job":
        return replace(
            self,
            data=self.data.model_copy(deep=True),
            result=dict(self.result) if self.result is not None else None,
        )

    def to_status(self) -> JobStatus:
        return JobStatus(
            id=self.id,
            kind=self.kind,
            state=self.state,
            progress=self.progress,
            data=self.data,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            failed_reason=self.failed_reason,
            result=self.result,
        )


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class WorkQueue(ABC):

    # True when something outside the manager (a Celery worker) runs the jobs
    external_workers: bool = False

    def __init__(self, policies: dict[JobType, JobPolicy]) -> None:
        self._policies = policies

    @property
    def kinds(self) -> list[JobType]:
        return list(self._policies)

    @abstractmethod
    async def enqueue(self, kind: JobType, data: ProcessingJobData, delay: float = 0.0) -> Job:
        """Add a waiting job. Raises QueueClosedError after close()."""

    @abstractmethod
    async def dequeue(self, kind: JobType, timeout: float = 1.0) -> Job | None:
        """Claim the next available job, waiting up to `timeout` seconds."""

    @abstractmethod
    async def claim(self, kind: JobType, job_id: str) -> Job | None:
        """
        Claim one specific job. None unless it is waiting and its
        available_at has passed.
        """

    @abstractmethod
    async def find_open(self, kind: JobType, document_id: int) -> Job | None:
        """The document's waiting or active job of this kind, if any."""

    @abstractmethod
    async def ack(self, job: Job, result: dict[str, Any] | None = None) -> None:
        """Mark an active job completed."""

    @abstractmethod
    async def retry(self, job: Job, delay: float, reason: str) -> None:
        """Return an active job to waiting, runnable after `delay` seconds."""

    @abstractmethod
    async def fail(self, job: Job, reason: str) -> None:
        """Mark an active job permanently failed."""

    @abstractmethod
    async def update_progress(self, job: Job, progress: int) -> None:
        """Record progress (0–100) for an active job."""

    @abstractmethod
    async def get(self, kind: JobType, job_id: str) -> Job | None:
        """Return a copy of the job, or None if unknown or evicted."""

    @abstractmethod
    async def counts(self, kind: JobType) -> QueueCounts:
        """waiting (incl. delayed) / active / retained completed / retained failed."""

    async def recover_stalled(self, kind: JobType) -> list[str]:
        """
        Return jobs left active by a dead worker to waiting. Only durable
        backends can have any; returns the recovered ids.
        """
        return []

    @abstractmethod
    async def close(self) -> None:
        """Release resources. Further enqueue() calls raise QueueClosedError."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryWorkQueue(WorkQueue):

    def __init__(self, policies: dict[JobType, JobPolicy]) -> None:
        super().__init__(policies)
        self._jobs: dict[JobType, dict[str, Job]] = {k: {} for k in policies}
        self._waiting: dict[JobType, list[str]] = {k: [] for k in policies}
        self._completed: dict[JobType, deque[str]] = {k: deque() for k in policies}
        self._failed: dict[JobType, deque[str]] = {k: deque() for k in policies}
        self._ids = {k: itertools.count(1) for k in policies}
        self._cond: dict[JobType, asyncio.Condition] = {}
        self._closed = False

    def _condition(self, kind: JobType) -> asyncio.Condition:
        # created lazily so the queue can be built outside a running loop
        if kind not in self._cond:
            self._cond[kind] = asyncio.Condition()
        return self._cond[kind]

    async def enqueue(self, kind: JobType, data: ProcessingJobData, delay: float = 0.0) -> Job:
        if self._closed:
            raise QueueClosedError(kind.value)
        policy = self._policies[kind]
        job = Job(
            id=str(next(self._ids[kind])),
            kind=kind,
            data=data.model_copy(deep=True),
            max_attempts=policy.max_attempts,
            available_at=time.time() + delay,
        )
        cond = self._condition(kind)
        async with cond:
            self._jobs[kind][job.id] = job
            self._waiting[kind].append(job.id)
            cond.notify()
        logger.debug("Job enqueued | kind=%s job=%s doc=%s", kind.value, job.id, data.document_id)
        return job.copy()

    @staticmethod
    def _activate(job: Job) -> Job:
        job.state = JobState.ACTIVE
        job.attempts += 1
        job.progress = 0
        job.started_at = _utcnow()
        return job

    def _claim(self, kind: JobType) -> tuple[Job | None, float | None]:
        """Pop the first runnable job; else return the wait until the next one."""
        now = time.time()
        next_at: float | None = None
        waiting = self._waiting[kind]
        for idx, job_id in enumerate(waiting):
            job = self._jobs[kind][job_id]
            if job.available_at <= now:
                del waiting[idx]
                return self._activate(job), None
            if next_at is None or job.available_at < next_at:
                next_at = job.available_at
        return None, (next_at - now) if next_at is not None else None

    async def claim(self, kind: JobType, job_id: str) -> Job | None:
        async with self._condition(kind):
            job = self._jobs[kind].get(job_id)
            if job is None or job_id not in self._waiting[kind] or job.available_at > time.time():
                return None
            self._waiting[kind].remove(job_id)
            return self._activate(job).copy()

    async def find_open(self, kind: JobType, document_id: int) -> Job | None:
        for job in self._jobs[kind].values():
            if job.data.document_id == document_id and job.state in (JobState.WAITING, JobState.ACTIVE):
                return job.copy()
        return None

    async def dequeue(self, kind: JobType, timeout: float = 1.0) -> Job | None:
        if self._closed:
            return None
        cond = self._condition(kind)
        deadline = time.monotonic() + timeout

        async with cond:
            while True:
                job, wait_for_next = self._claim(kind)
                if job is not None:
                    return job.copy()

                remaining = deadline - time.monotonic()
                if remaining <= 0 or self._closed:
                    return None
                wait = remaining if wait_for_next is None else min(remaining, wait_for_next)
                try:
                    await asyncio.wait_for(cond.wait(), timeout=max(wait, 0.001))
                except asyncio.TimeoutError:
                    pass

    def _finish(self, job: Job, state: JobState) -> Job:
        record = self._jobs[job.kind][job.id]
        record.state = state
        record.completed_at = _utcnow()

        policy = self._policies[job.kind]
        retained, limit = (
            (self._completed[job.kind], policy.keep_completed)
            if state is JobState.COMPLETED
            else (self._failed[job.kind], policy.keep_failed)
        )
        retained.append(job.id)
        while len(retained) > limit:
            evicted = retained.popleft()
            self._jobs[job.kind].pop(evicted, None)
        return record

    async def ack(self, job: Job, result: dict[str, Any] | None = None) -> None:
        record = self._jobs[job.kind][job.id]
        record.progress = max(record.progress, job.progress)
        record.result = dict(result) if result is not None else None
        self._finish(job, JobState.COMPLETED)

    async def retry(self, job: Job, delay: float, reason: str) -> None:
        cond = self._condition(job.kind)
        async with cond:
            record = self._jobs[job.kind][job.id]
            record.state = JobState.WAITING
            record.failed_reason = reason
            record.available_at = time.time() + delay
            self._waiting[job.kind].append(job.id)
            cond.notify()

    async def fail(self, job: Job, reason: str) -> None:
        record = self._jobs[job.kind][job.id]
        record.failed_reason = reason
        self._finish(job, JobState.FAILED)

    async def update_progress(self, job: Job, progress: int) -> None:
        record = self._jobs[job.kind].get(job.id)
        if record is not None and record.state is JobState.ACTIVE:
            record.progress = progress

    async def get(self, kind: JobType, job_id: str) -> Job | None:
        job = self._jobs.get(kind, {}).get(job_id)
        return job.copy() if job else None

    async def counts(self, kind: JobType) -> QueueCounts:
        jobs = self._jobs[kind].values()
        return QueueCounts(
            waiting=sum(1 for j in jobs if j.state is JobState.WAITING),
            active=sum(1 for j in jobs if j.state is JobState.ACTIVE),
            completed=len(self._completed[kind]),
            failed=len(self._failed[kind]),
        )

    async def close(self) -> None:
        self._closed = True
        for cond in self._cond.values():
            async with cond:
                cond.notify_all()


def create_work_queue(settings: Settings, policies: dict[JobType, JobPolicy]) -> WorkQueue:
    """Select the queue backend from config."""
    backend = settings.queue_backend.lower()

    if backend == "memory":
        return InMemoryWorkQueue(policies)
    if backend == "redis":
        from docflow.workers.redis_queue import RedisWorkQueue
        return RedisWorkQueue.from_url(settings.redis_url, policies, prefix=settings.queue_prefix)
    if backend == "celery":
        from docflow.workers.celery_queue import CeleryWorkQueue
        return CeleryWorkQueue.from_url(settings.redis_url, policies, prefix=settings.queue_prefix)

    raise ValueError(
        f"Unknown queue backend: '{backend}'. Valid options: 'memory', 'redis', 'celery'"
    )
