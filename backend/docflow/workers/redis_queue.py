"""
Redis-backed WorkQueue
══════════════════════

Durable job store shared by any number of worker processes.

Key layout (per kind, under `prefix`):
  {prefix}:{kind}:seq        INCR counter → job ids
  {prefix}:{kind}:job:{id}   hash: one field per Job attribute
  {prefix}:{kind}:waiting    sorted set, score = available_at (epoch s).
                             Delayed retries sit here with a future score.
  {prefix}:{kind}:active     set of claimed job ids
  {prefix}:{kind}:open       hash: document id → id of its unfinished job
  {prefix}:{kind}:completed  list, newest first, trimmed to keep_completed
  {prefix}:{kind}:failed     list, newest first, trimmed to keep_failed

Claiming runs as one Lua script: pick (or check) the member, ZREM it from
`waiting`, SADD it to `active` and stamp the hash. A job is therefore always
in exactly one of waiting / active, even if the claiming process dies
halfway, and two processes can never run the same attempt.
Jobs left in `active` by a crashed process are returned to `waiting` by
recover_stalled() once their attempt is older than `stalled_after`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis

from docflow.core.exceptions import QueueClosedError
from docflow.schemas.jobs import JobState, JobType, ProcessingJobData, QueueCounts
from docflow.workers.policies import JobPolicy
from docflow.workers.queue import Job, WorkQueue, _utcnow

logger = logging.getLogger(__name__)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# KEYS: waiting, active
# ARGV: now, job key prefix, job id ('' = next runnable), started_at
# Returns the claimed id, '' for a member whose hash was evicted, nil for none.
CLAIM_SCRIPT = """
local id = ARGV[3]
if id == '' then
  local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
  if #ids == 0 then return false end
  id = ids[1]
else
  local score = redis.call('ZSCORE', KEYS[1], id)
  if not score or tonumber(score) > tonumber(ARGV[1]) then return false end
end
redis.call('ZREM', KEYS[1], id)
local job_key = ARGV[2] .. id
if redis.call('EXISTS', job_key) == 0 then return '' end
redis.call('SADD', KEYS[2], id)
redis.call('HINCRBY', job_key, 'attempts', 1)
redis.call('HSET', job_key, 'state', 'active', 'progress', '0', 'started_at', ARGV[4])
return id
"""

# KEYS: open   ARGV: document id, job id
RELEASE_OPEN_SCRIPT = """
if redis.call('HGET', KEYS[1], ARGV[1]) == ARGV[2] then
  return redis.call('HDEL', KEYS[1], ARGV[1])
end
return 0
"""


class RedisWorkQueue(WorkQueue):

    def __init__(
        self,
        client: aioredis.Redis,
        policies: dict[JobType, JobPolicy],
        *,
        prefix: str = "docflow",
        poll_interval: float = 0.2,
        stalled_after: float = 600.0,
    ) -> None:
        super().__init__(policies)
        self._redis = client
        self._prefix = prefix
        self._poll_interval = poll_interval
        self._stalled_after = stalled_after
        self._closed = False
        self._claim_script = client.register_script(CLAIM_SCRIPT)
        self._release_open_script = client.register_script(RELEASE_OPEN_SCRIPT)

    @classmethod
    def from_url(cls, url: str, policies: dict[JobType, JobPolicy], **kwargs: Any) -> "RedisWorkQueue":
        return cls(aioredis.from_url(url, decode_responses=True), policies, **kwargs)

    # ------------------------------------------------------------------
    # Keys & (de)serialisation
    # ------------------------------------------------------------------

    def _key(self, kind: JobType, suffix: str) -> str:
        return f"{self._prefix}:{kind.value}:{suffix}"

    def _job_key(self, kind: JobType, job_id: str) -> str:
        return self._key(kind, f"job:{job_id}")

    @staticmethod
    def _encode(job: Job) -> dict[str, str]:
        return {
            "id":            job.id,
            "kind":          job.kind.value,
            "data":          job.data.model_dump_json(),
            "max_attempts":  str(job.max_attempts),
            "state":         job.state.value,
            "attempts":      str(job.attempts),
            "progress":      str(job.progress),
            "created_at":    job.created_at.isoformat(),
            "started_at":    job.started_at.isoformat() if job.started_at else "",
            "completed_at":  job.completed_at.isoformat() if job.completed_at else "",
            "failed_reason": job.failed_reason or "",
            "result":        json.dumps(job.result) if job.result is not None else "",
            "available_at":  repr(job.available_at),
        }

    @staticmethod
    def _decode(raw: dict[str, str]) -> Job:
        return Job(
            id=raw["id"],
            kind=JobType(raw["kind"]),
            data=ProcessingJobData.model_validate_json(raw["data"]),
            max_attempts=int(raw["max_attempts"]),
            state=JobState(raw["state"]),
            attempts=int(raw.get("attempts") or 0),
            progress=int(raw.get("progress") or 0),
            created_at=_dt(raw["created_at"]) or _utcnow(),
            started_at=_dt(raw.get("started_at")),
            completed_at=_dt(raw.get("completed_at")),
            failed_reason=raw.get("failed_reason") or None,
            result=json.loads(raw["result"]) if raw.get("result") else None,
            available_at=float(raw.get("available_at") or 0.0),
        )

    async def _load(self, kind: JobType, job_id: str) -> Job | None:
        raw = await self._redis.hgetall(self._job_key(kind, job_id))
        return self._decode(raw) if raw else None

    # ------------------------------------------------------------------
    # WorkQueue
    # ------------------------------------------------------------------

    async def enqueue(self, kind: JobType, data: ProcessingJobData, delay: float = 0.0) -> Job:
        if self._closed:
            raise QueueClosedError(kind.value)
        job_id = str(await self._redis.incr(self._key(kind, "seq")))
        job = Job(
            id=job_id,
            kind=kind,
            data=data.model_copy(deep=True),
            max_attempts=self._policies[kind].max_attempts,
            available_at=time.time() + delay,
        )
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(kind, job_id), mapping=self._encode(job))
            pipe.zadd(self._key(kind, "waiting"), {job_id: job.available_at})
            pipe.hset(self._key(kind, "open"), str(data.document_id), job_id)
            await pipe.execute()
        logger.debug("Job enqueued | kind=%s job=%s doc=%s", kind.value, job_id, data.document_id)
        return job

    async def _claim(self, kind: JobType, job_id: str = "") -> Job | None:
        # members whose hash was evicted are dropped by the script; try the next
        for _ in range(5):
            claimed = await self._claim_script(
                keys=[self._key(kind, "waiting"), self._key(kind, "active")],
                args=[repr(time.time()), self._job_key(kind, ""), job_id, _utcnow().isoformat()],
            )
            if claimed is None:
                return None
            if claimed:
                return await self._load(kind, claimed)
            if job_id:
                return None
        return None

    async def claim(self, kind: JobType, job_id: str) -> Job | None:
        return await self._claim(kind, str(job_id))

    async def find_open(self, kind: JobType, document_id: int) -> Job | None:
        job_id = await self._redis.hget(self._key(kind, "open"), str(document_id))
        if not job_id:
            return None
        job = await self._load(kind, job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.ACTIVE):
            return None
        return job

    async def dequeue(self, kind: JobType, timeout: float = 1.0) -> Job | None:
        deadline = time.monotonic() + timeout
        while not self._closed:
            job = await self._claim(kind)
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))
        return None

    async def _finish(self, job: Job, state: JobState, fields: dict[str, str]) -> None:
        policy = self._policies[job.kind]
        list_key, limit = (
            (self._key(job.kind, "completed"), policy.keep_completed)
            if state is JobState.COMPLETED
            else (self._key(job.kind, "failed"), policy.keep_failed)
        )
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.kind, job.id), mapping={
                "state":        state.value,
                "completed_at": _utcnow().isoformat(),
                **fields,
            })
            pipe.srem(self._key(job.kind, "active"), job.id)
            pipe.lpush(list_key, job.id)
            await pipe.execute()
        await self._release_open_script(
            keys=[self._key(job.kind, "open")],
            args=[str(job.data.document_id), job.id],
        )

        evicted = await self._redis.lrange(list_key, limit, -1)
        if evicted:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.ltrim(list_key, 0, limit - 1)
                for job_id in evicted:
                    pipe.delete(self._job_key(job.kind, job_id))
                await pipe.execute()

    async def ack(self, job: Job, result: dict[str, Any] | None = None) -> None:
        await self._finish(job, JobState.COMPLETED, {
            "result": json.dumps(result) if result is not None else "",
        })

    async def retry(self, job: Job, delay: float, reason: str) -> None:
        available_at = time.time() + delay
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.kind, job.id), mapping={
                "state":         JobState.WAITING.value,
                "failed_reason": reason,
                "available_at":  repr(available_at),
            })
            pipe.srem(self._key(job.kind, "active"), job.id)
            pipe.zadd(self._key(job.kind, "waiting"), {job.id: available_at})
            await pipe.execute()

    async def fail(self, job: Job, reason: str) -> None:
        await self._finish(job, JobState.FAILED, {"failed_reason": reason})

    async def update_progress(self, job: Job, progress: int) -> None:
        await self._redis.hset(self._job_key(job.kind, job.id), "progress", str(progress))

    async def get(self, kind: JobType, job_id: str) -> Job | None:
        return await self._load(kind, job_id)

    async def counts(self, kind: JobType) -> QueueCounts:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(kind, "waiting"))
            pipe.scard(self._key(kind, "active"))
            pipe.llen(self._key(kind, "completed"))
            pipe.llen(self._key(kind, "failed"))
            waiting, active, completed, failed = await pipe.execute()
        return QueueCounts(waiting=waiting, active=active, completed=completed, failed=failed)

    async def recover_stalled(self, kind: JobType) -> list[str]:
        cutoff = time.time() - self._stalled_after
        recovered: list[str] = []
        for job_id in await self._redis.smembers(self._key(kind, "active")):
            job = await self._load(kind, job_id)
            if job is None:
                await self._redis.srem(self._key(kind, "active"), job_id)
                continue
            if job.started_at is not None and job.started_at.timestamp() > cutoff:
                continue
            now = time.time()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.srem(self._key(kind, "active"), job_id)
                pipe.hset(self._job_key(kind, job_id), mapping={
                    "state":        JobState.WAITING.value,
                    "available_at": repr(now),
                })
                pipe.zadd(self._key(kind, "waiting"), {job_id: now})
                await pipe.execute()
            recovered.append(job_id)
        return recovered

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._redis.aclose()
        logger.info("Redis work queue closed | prefix=%s", self._prefix)
