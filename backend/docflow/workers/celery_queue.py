"""
Celery-dispatched WorkQueue
═══════════════════════════

The Redis ledger (RedisWorkQueue) stays the record of job state, attempts,
progress and retention. On top of it, whenever a job becomes waiting, a
`run_pipeline_stage` task carrying (kind, job_id) is published to the kind's
kombu queue:

  pipeline.upload          intake
  pipeline.ocr             OCR
  pipeline.classification  classification
  pipeline.indexing        indexing

The countdown is the job's delay, so Celery's ETA scheduling takes the
place of the in-process poll loop, and the per-kind soft/hard time limits
follow the policy timeout. A Celery worker runs the job through
ProcessingQueueManager.run_job(); the atomic claim turns a duplicate
delivery into a no-op.

Bound to a running task (`task=`), retries are not published here: the
task re-schedules itself with task.retry() and progress is mirrored to the
result backend with task.update_state().
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import redis.asyncio as aioredis
from celery import Celery, Task

from docflow.schemas.jobs import JobType, ProcessingJobData
from docflow.workers.policies import JobPolicy
from docflow.workers.queue import Job
from docflow.workers.redis_queue import RedisWorkQueue

logger = logging.getLogger(__name__)

RUN_STAGE_TASK = "docflow.workers.tasks.run_pipeline_stage"

# seconds past the stage timeout before Celery's soft / hard limits fire
SOFT_LIMIT_GRACE = 15
HARD_LIMIT_GRACE = 30


def pipeline_queue(kind: JobType) -> str:
    return f"pipeline.{kind.value}"


class CeleryWorkQueue(RedisWorkQueue):

    external_workers = True

    def __init__(
        self,
        client: aioredis.Redis,
        policies: dict[JobType, JobPolicy],
        *,
        app: Celery | None = None,
        task: Task | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(client, policies, **kwargs)
        if app is None:
            from docflow.workers.celery_app import celery_app as app
        self._app = app
        self._task = task

    @classmethod
    def from_url(cls, url: str, policies: dict[JobType, JobPolicy], **kwargs: Any) -> "CeleryWorkQueue":
        return cls(aioredis.from_url(url, decode_responses=True), policies, **kwargs)

    def _limits(self, kind: JobType) -> dict[str, float]:
        timeout = self._policies[kind].timeout
        if not timeout:
            return {}
        return {"soft_time_limit": timeout + SOFT_LIMIT_GRACE, "time_limit": timeout + HARD_LIMIT_GRACE}

    async def _publish(self, kind: JobType, job_id: str, delay: float = 0.0) -> None:
        """Publish the task that will run this job. Runs in the thread executor."""
        queue = pipeline_queue(kind)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: self._app.send_task(
                RUN_STAGE_TASK,
                kwargs={"kind": kind.value, "job_id": job_id},
                queue=queue,
                routing_key=queue,
                countdown=max(delay, 0.0),
                **self._limits(kind),
            ),
        )
        logger.info("Pipeline task published | kind=%s job=%s delay=%.2fs", kind.value, job_id, delay)

    async def enqueue(self, kind: JobType, data: ProcessingJobData, delay: float = 0.0) -> Job:
        job = await super().enqueue(kind, data, delay)
        await self._publish(kind, job.id, delay)
        return job

    async def retry(self, job: Job, delay: float, reason: str) -> None:
        await super().retry(job, delay, reason)
        if self._task is None:
            await self._publish(job.kind, job.id, delay)

    async def update_progress(self, job: Job, progress: int) -> None:
        await super().update_progress(job, progress)
        if self._task is None:
            return
        meta = {"kind": job.kind.value, "job_id": job.id, "document_id": job.data.document_id, "progress": progress}
        await asyncio.get_running_loop().run_in_executor(
            None, lambda: self._task.update_state(state="PROGRESS", meta=meta)
        )

    async def recover_stalled(self, kind: JobType) -> list[str]:
        recovered = await super().recover_stalled(kind)
        for job_id in recovered:
            await self._publish(kind, job_id)
        return recovered
