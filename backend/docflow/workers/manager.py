"""
Processing Queue Manager
════════════════════════

Runs the four-stage document pipeline on top of an injected WorkQueue.

Concurrency model:
  One pool of asyncio worker tasks per job kind, sized by the kind's policy
  (upload 10, ocr 5, classification 5, indexing 10 by default). A worker
  claims a job, runs the stage handler under the kind's timeout, then acks,
  retries or fails it. Work for one document is ordered by chaining: the
  next stage's job only exists once the previous stage succeeded.

  When the queue backend hands jobs to Celery (external_workers), start()
  spawns no pools: each Celery task calls run_job() for the job it carries.

Failure handling:
  - Terminal errors (validation, unsupported type, missing document, illegal
    status transition) fail the job on the spot.
  - Anything else, timeouts included, is retried after the policy's backoff
    until max_attempts is spent.
  - A job that fails for good marks its document 'failed' with the reason;
    nothing is enqueued after it.

Lifecycle:
  start()         recover stalled jobs, spawn worker pools (idempotent)
  close_queues()  refuse new work, let active jobs finish, release the
                  queue backend (idempotent)
"""

from __future__ import annotations

import asyncio
import logging
import time

from docflow.core.config import Settings, get_settings
from docflow.core.deadlines import stage_deadline
from docflow.core.exceptions import (
    DocumentNotFoundError,
    InvalidStatusTransition,
    JobNotFoundError,
    QueueClosedError,
    QueueNotFoundError,
    is_terminal,
)
from docflow.processing.files import FileProcessor
from docflow.schemas.documents import DocumentStatus
from docflow.schemas.jobs import JobHandle, JobStatus, JobType, ProcessingJobData, QueueCounts
from docflow.services.ai_gateway import AIGateway
from docflow.services.document_store import DocumentStore
from docflow.services.indexer import LoggingIndexer, SearchIndexer
from docflow.workers.policies import JobPolicy, build_policies
from docflow.workers.queue import Job, WorkQueue, create_work_queue
from docflow.workers.stages import STAGES, JobContext, PipelineServices

logger = logging.getLogger(__name__)


class ProcessingQueueManager:

    def __init__(
        self,
        *,
        store: DocumentStore,
        ai: AIGateway,
        files: FileProcessor,
        indexer: SearchIndexer | None = None,
        settings: Settings | None = None,
        queue: WorkQueue | None = None,
        policies: dict[JobType, JobPolicy] | None = None,
        poll_timeout: float = 0.5,
    ) -> None:
        settings = settings or get_settings()
        self._policies = policies or build_policies(settings)
        self._queue = queue or create_work_queue(settings, self._policies)
        self._store = store
        self._services = PipelineServices(
            store=store,
            files=files,
            ai=ai,
            indexer=indexer or LoggingIndexer(),
            upload_dir=settings.upload_dir,
            hand_off=self._hand_off,
        )
        self._poll_timeout = poll_timeout
        self._workers: list[asyncio.Task] = []
        self._started = False
        self._closing = False
        self._closed = False
        self._close_lock = asyncio.Lock()

    @property
    def policies(self) -> dict[JobType, JobPolicy]:
        return dict(self._policies)

    @property
    def is_running(self) -> bool:
        return self._started and not self._closing

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        if self._closing:
            raise QueueClosedError("all")
        self._started = True

        for kind, policy in self._policies.items():
            for job_id in await self._queue.recover_stalled(kind):
                logger.warning("Job stalled, returned to waiting | kind=%s job=%s", kind.value, job_id)
            if self._queue.external_workers:
                continue
            for n in range(policy.concurrency):
                self._workers.append(
                    asyncio.create_task(self._worker(kind), name=f"docflow-{kind.value}-{n}")
                )

        if self._queue.external_workers:
            logger.info("Processing queues started | workers=external")
            return
        logger.info(
            "Processing queues started | workers=%s",
            {k.value: p.concurrency for k, p in self._policies.items()},
        )

    async def close_queues(self) -> None:
        async with self._close_lock:
            if self._closed:
                return
            self._closing = True
            if self._workers:
                await asyncio.gather(*self._workers, return_exceptions=True)
                self._workers.clear()
            await self._queue.close()
            self._closed = True
        logger.info("Processing queues closed")

    async def wait_until_idle(self, timeout: float = 30.0, interval: float = 0.02) -> bool:
        """
        Block until no kind has waiting or active jobs. Returns False on
        timeout. Delayed retries count as waiting.
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            stats = await self.get_queue_stats()
            if all(c.waiting == 0 and c.active == 0 for c in stats.values()):
                return True
            await asyncio.sleep(interval)
        return False

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def add_document_processing_job(self, data: ProcessingJobData) -> JobHandle:
        return await self.enqueue(JobType.UPLOAD, data)

    async def add_ocr_job(self, data: ProcessingJobData) -> JobHandle:
        return await self.enqueue(JobType.OCR, data)

    async def add_classification_job(self, data: ProcessingJobData) -> JobHandle:
        return await self.enqueue(JobType.CLASSIFICATION, data)

    async def add_indexing_job(self, data: ProcessingJobData) -> JobHandle:
        return await self.enqueue(JobType.INDEXING, data)

    async def enqueue(self, kind: JobType | str, data: ProcessingJobData) -> JobHandle:
        """Raises QueueNotFoundError for an unknown kind, QueueClosedError once closing."""
        kind = self._resolve_kind(kind)
        if self._closing:
            raise QueueClosedError(kind.value)
        return await self._hand_off(kind, data)

    async def _hand_off(self, kind: JobType, data: ProcessingJobData) -> JobHandle:
        # stage hand-offs still land while close_queues() drains active jobs
        if data.job_type != kind:
            data = data.model_copy(update={"job_type": kind})
        job = await self._queue.enqueue(kind, data)
        logger.info("Job added | kind=%s job=%s doc=%s", kind.value, job.id, data.document_id)
        return JobHandle(id=job.id, kind=kind)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_queue_stats(self) -> dict[str, QueueCounts]:
        return {kind.value: await self._queue.counts(kind) for kind in self._policies}

    async def get_job_status(self, kind: JobType | str, job_id: str) -> JobStatus:
        kind = self._resolve_kind(kind)
        job = await self._queue.get(kind, str(job_id))
        if job is None:
            raise JobNotFoundError(kind.value, str(job_id))
        return job.to_status()

    async def find_open_job(self, kind: JobType | str, document_id: int) -> JobStatus | None:
        """The document's waiting or active job of `kind`, if it has one."""
        kind = self._resolve_kind(kind)
        job = await self._queue.find_open(kind, document_id)
        return job.to_status() if job is not None else None

    def _resolve_kind(self, kind: JobType | str) -> JobType:
        try:
            resolved = JobType(kind)
        except ValueError:
            raise QueueNotFoundError(str(kind)) from None
        if resolved not in self._policies:
            raise QueueNotFoundError(resolved.value)
        return resolved

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, kind: JobType) -> None:
        while not self._closing:
            try:
                job = await self._queue.dequeue(kind, timeout=self._poll_timeout)
                if job is not None:
                    await self._process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # backend hiccup; keep the pool alive
                logger.exception("Worker error | kind=%s", kind.value)
                await asyncio.sleep(self._poll_timeout)

    async def run_job(self, kind: JobType | str, job_id: str) -> JobStatus | None:
        """
        Claim and run one named job in the calling task. Used by Celery
        workers, which receive job ids instead of polling the queue.

        Returns the job's status afterwards, or None if it is unknown or
        evicted. A job that is not runnable yet (already active elsewhere,
        or waiting on a backoff delay) is left untouched.
        """
        kind = self._resolve_kind(kind)
        job = await self._queue.claim(kind, str(job_id))
        if job is not None:
            await self._process(job)
        after = await self._queue.get(kind, str(job_id))
        return after.to_status() if after is not None else None

    async def _process(self, job: Job) -> None:
        policy = self._policies[job.kind]

        if job.attempts > job.max_attempts:
            reason = f"attempts exhausted ({job.attempts - 1}/{job.max_attempts}) after stalling"
            await self._queue.fail(job, reason)
            logger.error("Job failed | kind=%s job=%s doc=%s reason=%s", job.kind.value, job.id, job.data.document_id, reason)
            await self._mark_document_failed(job, reason)
            return

        ctx = JobContext(job, self._queue)
        handler = STAGES[job.kind]
        t0 = time.monotonic()
        scope = None

        try:
            with stage_deadline(policy.timeout):
                async with asyncio.timeout(policy.timeout or None) as scope:
                    result = await handler(ctx, job.data, self._services)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if scope is not None and scope.expired():
                reason = f"timed out after {policy.timeout:g}s"
            else:
                # a TimeoutError raised inside the handler keeps its own message
                reason = str(exc) or exc.__class__.__name__
            await self._handle_failure(job, policy, exc, reason)
            return

        await self._queue.ack(job, result)
        logger.info(
            "Job completed | kind=%s job=%s doc=%s attempt=%d/%d elapsed_ms=%.0f",
            job.kind.value, job.id, job.data.document_id,
            job.attempts, job.max_attempts, (time.monotonic() - t0) * 1000,
        )

    async def _handle_failure(self, job: Job, policy: JobPolicy, exc: BaseException, reason: str) -> None:
        if is_terminal(exc) or job.attempts >= job.max_attempts:
            await self._queue.fail(job, reason)
            logger.error(
                "Job failed | kind=%s job=%s doc=%s attempt=%d/%d terminal=%s reason=%s",
                job.kind.value, job.id, job.data.document_id,
                job.attempts, job.max_attempts, is_terminal(exc), reason,
            )
            await self._mark_document_failed(job, reason)
            return

        delay = policy.backoff_for(job.attempts)
        await self._queue.retry(job, delay, reason)
        logger.warning(
            "Job retry scheduled | kind=%s job=%s doc=%s attempt=%d/%d delay=%.2fs reason=%s",
            job.kind.value, job.id, job.data.document_id,
            job.attempts, job.max_attempts, delay, reason,
        )

    async def _mark_document_failed(self, job: Job, reason: str) -> None:
        message = f"{job.kind.value} failed: {reason}"
        try:
            await self._store.update_status(
                job.data.document_id,
                DocumentStatus.FAILED,
                error_message=message,
                metadata={"error": {"stage": job.kind.value, "message": reason}},
            )
        except (InvalidStatusTransition, DocumentNotFoundError) as exc:
            logger.warning("Document not marked failed | doc=%s reason=%s", job.data.document_id, exc)
        except Exception:
            logger.exception("Failed to mark document failed | doc=%s", job.data.document_id)


def create_queue_manager(
    settings: Settings,
    store: DocumentStore,
    *,
    indexer: SearchIndexer | None = None,
    queue: WorkQueue | None = None,
) -> ProcessingQueueManager:
    """Wire a manager with the configured queue backend, AI gateway and file processor."""
    return ProcessingQueueManager(
        store=store,
        ai=AIGateway(settings),
        files=FileProcessor(settings),
        indexer=indexer,
        settings=settings,
        queue=queue,
    )
