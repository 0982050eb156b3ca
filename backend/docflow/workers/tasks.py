"""
Celery Tasks — Pipeline Stages and Maintenance

Task: run_pipeline_stage
  Published by CeleryWorkQueue, one per waiting job, to pipeline.<kind>.
  Claims the job from the Redis ledger and runs one attempt through the
  ProcessingQueueManager. A retryable failure re-schedules the task with
  task.retry() and the kind's backoff; progress is reported with
  update_state(state="PROGRESS").

Task: requeue_stale_documents
  Beat-scheduled every 60 s. Documents still 'pending' after
  stale_after_seconds whose intake job is neither waiting nor running
  never had it run (the enqueue failed during upload, or the job was lost
  with a process-local queue). Each one gets a fresh intake job on the
  shared Redis work queue.

Task: health_check
  Liveness probe for the maintenance worker.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from celery import Task

from docflow.schemas.jobs import JobState, JobType, ProcessingJobData
from docflow.services.document_store import DocumentStore
from docflow.workers.celery_app import celery_app
from docflow.workers.celery_queue import RUN_STAGE_TASK
from docflow.workers.manager import ProcessingQueueManager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Pipeline stage task (queue_backend="celery")
# ---------------------------------------------------------------------------

@celery_app.task(
    name=RUN_STAGE_TASK,
    bind=True,
    max_retries=3,
    default_retry_delay=2,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def run_pipeline_stage(self: Task, *, kind: str, job_id: str) -> dict[str, Any]:
    """Run one attempt of one stage job from the Redis ledger."""
    return run_async(_run_pipeline_stage(self, kind, job_id))


async def _run_pipeline_stage(task: Task, kind: str, job_id: str) -> dict[str, Any]:
    from docflow.core.config import get_settings
    from docflow.services.document_store import create_document_store
    from docflow.workers.celery_queue import CeleryWorkQueue
    from docflow.workers.manager import create_queue_manager
    from docflow.workers.policies import build_policies

    cfg = get_settings()
    store = create_document_store(cfg)
    queue = CeleryWorkQueue.from_url(
        cfg.redis_url, build_policies(cfg), app=task.app, task=task, prefix=cfg.queue_prefix,
    )
    manager = create_queue_manager(cfg, store, queue=queue)
    try:
        return await run_pipeline_stage_async(task, manager, kind, job_id)
    finally:
        await manager.close_queues()
        await store.close()


async def run_pipeline_stage_async(
    task: Task,
    manager: ProcessingQueueManager,
    kind: str,
    job_id: str,
) -> dict[str, Any]:
    """
    Run the job, then translate the ledger's verdict for Celery: a job the
    manager put back to waiting becomes task.retry() with the policy's
    backoff as countdown.
    """
    status = await manager.run_job(kind, job_id)
    if status is None:
        logger.warning("Pipeline job missing | kind=%s job=%s", kind, job_id)
        return {"status": "missing", "kind": kind, "job_id": job_id}

    if status.state is JobState.WAITING:
        policy = manager.policies[status.kind]
        countdown = policy.backoff_for(max(status.attempts, 1))
        logger.info(
            "Pipeline job retry | kind=%s job=%s attempt=%d/%d countdown=%.2fs",
            kind, job_id, status.attempts, status.max_attempts, countdown,
        )
        raise task.retry(countdown=countdown, max_retries=status.max_attempts)

    return {
        "status":      status.state.value,
        "kind":        status.kind.value,
        "job_id":      status.id,
        "document_id": status.data.document_id,
        "attempts":    status.attempts,
    }


# ---------------------------------------------------------------------------
# Stale-document scanner, runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

async def requeue_stale_documents_async(
    store: DocumentStore,
    manager: ProcessingQueueManager,
    older_than: timedelta,
    limit: int = 50,
) -> dict[str, int]:
    stale = await store.find_stale_pending(older_than, limit=limit)
    queued = 0
    already_queued = 0

    for doc in stale:
        try:
            # a pending document whose intake job is still waiting or running is not lost
            open_job = await manager.find_open_job(JobType.UPLOAD, doc.id)
            if open_job is not None:
                already_queued += 1
                logger.info(
                    "Stale document already queued | doc=%s job=%s state=%s",
                    doc.id, open_job.id, open_job.state.value,
                )
                continue
            handle = await manager.add_document_processing_job(ProcessingJobData(
                document_id=doc.id,
                file_path=doc.file_path,
                job_type=JobType.UPLOAD,
            ))
        except Exception as exc:
            logger.error("Re-queue failed | doc=%s error=%s", doc.id, exc)
            continue
        queued += 1
        logger.info("Re-queued stale document | doc=%s job=%s", doc.id, handle.id)

    return {"stale": len(stale), "requeued": queued, "already_queued": already_queued}


async def _requeue_stale_documents() -> dict[str, Any]:
    from docflow.core.config import get_settings
    from docflow.services.document_store import create_document_store
    from docflow.workers.manager import create_queue_manager

    cfg = get_settings()
    if cfg.queue_backend.lower() not in ("redis", "celery"):
        # a process-local queue here would never reach the pipeline workers
        logger.warning("Stale scan skipped | queue_backend=%s", cfg.queue_backend)
        return {"stale": 0, "requeued": 0, "skipped": True}

    store = create_document_store(cfg)
    manager = create_queue_manager(cfg, store)
    try:
        return await requeue_stale_documents_async(
            store, manager, timedelta(seconds=cfg.stale_after_seconds)
        )
    finally:
        await manager.close_queues()
        await store.close()


@celery_app.task(
    name="docflow.workers.tasks.requeue_stale_documents",
    bind=False,
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, Any]:
    return run_async(_requeue_stale_documents())


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="docflow.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
