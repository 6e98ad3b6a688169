from __future__ import annotations

from typing import Any, Callable, Optional

import orjson
import redis.asyncio as aioredis

from artscout.jobs.job_models import (
    Job,
    JobResult,
    JobState,
    QueueCounts,
    now_ms,
    utcnow,
)
from artscout.jobs.lua_scripts import QueueLuaScripts
from artscout.jobs.queue_store import (
    QueueStore,
    Reservation,
    apply_completed,
    apply_failed,
    apply_retry,
    visible_state,
)
from artscout.main.logging import get_logger

logger = get_logger(__name__)

# Waiting score = rank * RANK_SPAN + sequence keeps rank primary and FIFO secondary
RANK_SPAN = 10**12

DEFAULT_LEASE_MS = 60_000
LEASE_EXPIRED_REASON = "Job lease expired"


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _dump(job: Job) -> str:
    return orjson.dumps(job.model_dump(mode="json")).decode("utf-8")


def _load(raw: Any) -> Job:
    return Job.model_validate(orjson.loads(raw))


class RedisQueueStore(QueueStore):
    """Queue store shared by every worker process connected to the same Redis.

    A reserved job is held under a lease that its worker renews with
    ``extend_lease``. If the worker dies, the next reservation on the queue
    reclaims the job once the lease runs out: it runs again when it has
    attempts left and fails otherwise.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        key_prefix: str = "artscout",
        clock: Callable[[], int] = now_ms,
        close_connection: bool = False,
        lease_ms: int = DEFAULT_LEASE_MS,
    ):
        super().__init__(clock)
        self.redis = redis
        self.key_prefix = key_prefix
        self.lease_ms = lease_ms
        self._close_connection = close_connection

    def _key(self, queue_name: str, suffix: str) -> str:
        return f"{self.key_prefix}:{queue_name}:{suffix}"

    @property
    def heartbeat_interval_ms(self) -> Optional[int]:
        # Three renewals per lease leave room for a missed beat
        return max(1, self.lease_ms // 3)

    async def enqueue(self, job: Job, delay_ms: int = 0) -> str:
        self._require_queue(job.queue_name)
        q = job.queue_name
        job.sequence = int(await self.redis.incr(self._key(q, "seq")))
        ready_at = self._clock() + delay_ms if delay_ms > 0 else 0
        job.state = JobState.DELAYED if ready_at else JobState.WAITING
        await QueueLuaScripts.enqueue(
            self.redis,
            [
                self._key(q, "jobs"),
                self._key(q, "scores"),
                self._key(q, "waiting"),
                self._key(q, "delayed"),
                self._key(q, "attempts"),
                self._key(q, "max"),
            ],
            job.id,
            _dump(job),
            job.rank * RANK_SPAN + job.sequence,
            ready_at,
            job.attempts,
            job.max_attempts,
        )
        return job.id

    async def reserve(self, queue_name: str) -> Reservation:
        config = self._require_queue(queue_name)
        q = queue_name
        rate_max = config.rate_limiter.max if config.rate_limiter else 0
        rate_window = config.rate_limiter.duration_ms if config.rate_limiter else 0
        reply = await QueueLuaScripts.reserve(
            self.redis,
            [
                self._key(q, "waiting"),
                self._key(q, "delayed"),
                self._key(q, "active"),
                self._key(q, "paused"),
                self._key(q, "limiter"),
                self._key(q, "scores"),
                self._key(q, "jobs"),
                self._key(q, "attempts"),
                self._key(q, "max"),
                self._key(q, "stalled"),
            ],
            self._clock(),
            config.concurrency,
            rate_max,
            rate_window,
            self.lease_ms,
        )
        outcome, job_id, raw, retry_after, attempts, stalled = (_as_str(v) for v in reply)
        retry_after_ms = int(retry_after)
        hint = retry_after_ms if retry_after_ms >= 0 else None

        if outcome not in ("job", "exhausted"):
            return Reservation(retry_after_ms=hint)

        if not raw:
            # Payload vanished (evicted or deleted externally); release the slot
            logger.warning(
                "Reserved job has no stored payload",
                extra={"job_id": job_id, "queue_name": queue_name},
            )
            await self.redis.zrem(self._key(q, "active"), job_id)
            return Reservation()

        job = _load(raw)
        job.attempts = int(attempts)
        if stalled:
            job.failed_reason = stalled

        if outcome == "exhausted":
            logger.warning(
                "Reclaimed job has no attempts left",
                extra={
                    "job_id": job_id,
                    "queue_name": queue_name,
                    "attempts": job.attempts,
                    "reason": stalled,
                },
            )
            await self.fail(
                q, job_id, JobResult(success=False, error=stalled or LEASE_EXPIRED_REASON)
            )
            return Reservation(retry_after_ms=hint)

        if stalled:
            logger.warning(
                "Reclaimed job from an expired lease",
                extra={"job_id": job_id, "queue_name": queue_name, "attempt": job.attempts},
            )
        job.state = JobState.ACTIVE
        job.processed_at = utcnow()
        # Descriptive only; bucket membership and the attempts hash are authoritative
        await self.redis.hset(self._key(q, "jobs"), job_id, _dump(job))
        return Reservation(job=job)

    async def extend_lease(self, queue_name: str, job_id: str) -> None:
        self._require_queue(queue_name)
        await self.redis.zadd(
            self._key(queue_name, "active"),
            {job_id: self._clock() + self.lease_ms},
            xx=True,
        )

    async def _read(self, queue_name: str, job_id: str) -> Optional[Job]:
        q = queue_name
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hget(self._key(q, "jobs"), job_id)
            pipe.hget(self._key(q, "attempts"), job_id)
            pipe.zscore(self._key(q, "active"), job_id)
            pipe.zscore(self._key(q, "delayed"), job_id)
            raw, attempts, lease, ready_at = await pipe.execute()
        if raw is None:
            return None

        job = _load(raw)
        if attempts is not None:
            job.attempts = int(_as_str(attempts))
        if job.state in (JobState.COMPLETED, JobState.FAILED):
            return job
        # Promotion and lease reclaim move ids between sorted sets without
        # rewriting the JSON
        if lease is not None:
            job.state = JobState.ACTIVE
        elif ready_at is not None and float(ready_at) > self._clock():
            job.state = JobState.DELAYED
        else:
            job.state = JobState.WAITING
        return job

    async def update_progress(self, queue_name: str, job_id: str, progress: int) -> None:
        self._require_queue(queue_name)
        job = await self._read(queue_name, job_id)
        if job is None:
            return
        job.progress = progress
        await self.redis.hset(self._key(queue_name, "jobs"), job_id, _dump(job))

    async def _finish(
        self, queue_name: str, job: Job, bucket: str, keep: int
    ) -> None:
        evicted = await QueueLuaScripts.finish(
            self.redis,
            [
                self._key(queue_name, "jobs"),
                self._key(queue_name, "scores"),
                self._key(queue_name, "active"),
                self._key(queue_name, bucket),
                self._key(queue_name, "attempts"),
                self._key(queue_name, "max"),
                self._key(queue_name, "stalled"),
            ],
            job.id,
            _dump(job),
            keep,
        )
        if int(evicted) < 0:
            logger.warning(
                "Job outcome ignored, job is no longer held",
                extra={"job_id": job.id, "queue_name": queue_name, "bucket": bucket},
            )
        elif evicted:
            logger.debug(
                "Evicted jobs past retention",
                extra={"queue_name": queue_name, "bucket": bucket, "evicted": evicted},
            )

    async def complete(self, queue_name: str, job_id: str, result: JobResult) -> None:
        config = self._require_queue(queue_name)
        job = await self._read(queue_name, job_id)
        if job is None:
            await self.redis.zrem(self._key(queue_name, "active"), job_id)
            return
        apply_completed(job, result)
        await self._finish(queue_name, job, "completed", config.keep_completed)

    async def retry_later(
        self, queue_name: str, job_id: str, result: JobResult, delay_ms: int
    ) -> None:
        self._require_queue(queue_name)
        job = await self._read(queue_name, job_id)
        if job is None:
            await self.redis.zrem(self._key(queue_name, "active"), job_id)
            return
        apply_retry(job, result)
        moved = await QueueLuaScripts.retry(
            self.redis,
            [
                self._key(queue_name, "jobs"),
                self._key(queue_name, "active"),
                self._key(queue_name, "delayed"),
            ],
            job_id,
            _dump(job),
            self._clock() + max(0, delay_ms),
        )
        if not int(moved):
            logger.warning(
                "Job retry ignored, job is no longer held",
                extra={"job_id": job_id, "queue_name": queue_name},
            )

    async def fail(self, queue_name: str, job_id: str, result: JobResult) -> None:
        config = self._require_queue(queue_name)
        job = await self._read(queue_name, job_id)
        if job is None:
            await self.redis.zrem(self._key(queue_name, "active"), job_id)
            return
        apply_failed(job, result)
        await self._finish(queue_name, job, "failed", config.keep_failed)

    async def release(self, queue_name: str, job_id: str, reason: str) -> None:
        self._require_queue(queue_name)
        await QueueLuaScripts.release(
            self.redis,
            [self._key(queue_name, "active"), self._key(queue_name, "stalled")],
            job_id,
            reason,
        )

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        self._require_queue(queue_name)
        job = await self._read(queue_name, job_id)
        if job is None:
            return None
        return visible_state(job, await self.is_paused(queue_name))

    async def counts(self, queue_name: str) -> QueueCounts:
        self._require_queue(queue_name)
        q = queue_name
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zcard(self._key(q, "waiting"))
            pipe.zcard(self._key(q, "active"))
            pipe.llen(self._key(q, "completed"))
            pipe.llen(self._key(q, "failed"))
            pipe.zcard(self._key(q, "delayed"))
            pipe.exists(self._key(q, "paused"))
            waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueCounts(
            waiting=0 if paused else int(waiting),
            paused=int(waiting) if paused else 0,
            active=int(active),
            completed=int(completed),
            failed=int(failed),
            delayed=int(delayed),
        )

    async def pause(self, queue_name: str) -> None:
        self._require_queue(queue_name)
        await self.redis.set(self._key(queue_name, "paused"), "1")

    async def resume(self, queue_name: str) -> None:
        self._require_queue(queue_name)
        await self.redis.delete(self._key(queue_name, "paused"))

    async def is_paused(self, queue_name: str) -> bool:
        self._require_queue(queue_name)
        return bool(await self.redis.exists(self._key(queue_name, "paused")))

    async def close(self) -> None:
        if self._close_connection:
            await self.redis.aclose()
