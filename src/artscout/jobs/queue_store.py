"""Job storage per named queue.

A queue holds its jobs in five buckets: waiting (ordered by priority rank,
then enqueue order), delayed (ordered by the time they become ready), active,
completed and failed. Completed and failed buckets are bounded by the queue's
retention counts; evicted jobs are forgotten entirely.
"""

from __future__ import annotations

import asyncio
import heapq
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from artscout.jobs.job_models import (
    Job,
    JobResult,
    JobState,
    QueueCounts,
    now_ms,
    utcnow,
)
from artscout.jobs.queue_config import QueueConfig
from artscout.jobs.rate_limit import RollingWindowRateLimiter
from artscout.main.exceptions import MalformedIdentifierError
from artscout.main.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Reservation:
    """Result of asking a queue for work.

    ``retry_after_ms`` hints when asking again could succeed: the time until
    the rate-limit window frees a slot, or until the next delayed job is due.
    ``None`` means nothing is known to become available on its own.
    """

    job: Optional[Job] = None
    retry_after_ms: Optional[int] = None


class QueueStore(ABC):
    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._configs: Dict[str, QueueConfig] = {}

    def _require_queue(self, queue_name: str) -> QueueConfig:
        try:
            return self._configs[queue_name]
        except KeyError:
            raise MalformedIdentifierError(f"Unknown queue: {queue_name!r}") from None

    @property
    def queue_names(self) -> List[str]:
        return list(self._configs)

    def get_queue_config(self, queue_name: str) -> QueueConfig:
        return self._require_queue(queue_name)

    async def register_queue(self, queue_name: str, config: QueueConfig) -> None:
        if queue_name in self._configs:
            # Config is fixed at creation; a second registration keeps the first
            logger.debug(
                "Queue already registered", extra={"queue_name": queue_name}
            )
            return
        self._configs[queue_name] = config
        await self._on_register(queue_name, config)

    async def _on_register(self, queue_name: str, config: QueueConfig) -> None:
        return None

    @abstractmethod
    async def enqueue(self, job: Job, delay_ms: int = 0) -> str: ...

    @abstractmethod
    async def reserve(self, queue_name: str) -> Reservation: ...

    @abstractmethod
    async def update_progress(self, queue_name: str, job_id: str, progress: int) -> None: ...

    @abstractmethod
    async def complete(self, queue_name: str, job_id: str, result: JobResult) -> None: ...

    @abstractmethod
    async def retry_later(
        self, queue_name: str, job_id: str, result: JobResult, delay_ms: int
    ) -> None: ...

    @abstractmethod
    async def fail(self, queue_name: str, job_id: str, result: JobResult) -> None: ...

    @abstractmethod
    async def release(self, queue_name: str, job_id: str, reason: str) -> None:
        """Give up the hold on an active job whose outcome could not be recorded.

        The job runs again if it has attempts left, otherwise it fails with
        ``reason``.
        """

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def counts(self, queue_name: str) -> QueueCounts: ...

    @abstractmethod
    async def pause(self, queue_name: str) -> None: ...

    @abstractmethod
    async def resume(self, queue_name: str) -> None: ...

    @abstractmethod
    async def is_paused(self, queue_name: str) -> bool: ...

    @property
    def heartbeat_interval_ms(self) -> Optional[int]:
        """How often workers must renew their hold on a job; ``None`` if never."""
        return None

    async def extend_lease(self, queue_name: str, job_id: str) -> None:
        return None

    async def close(self) -> None:
        return None


def apply_reserved(job: Job) -> Job:
    job.attempts = min(job.attempts + 1, job.max_attempts)
    job.state = JobState.ACTIVE
    job.processed_at = utcnow()
    return job


def apply_completed(job: Job, result: JobResult) -> Job:
    job.state = JobState.COMPLETED
    job.result = result
    job.failed_reason = None
    job.finished_at = utcnow()
    return job


def apply_retry(job: Job, result: JobResult) -> Job:
    job.state = JobState.DELAYED
    job.result = result
    job.failed_reason = result.error
    return job


def apply_failed(job: Job, result: JobResult) -> Job:
    job.state = JobState.FAILED
    job.result = result
    job.failed_reason = result.error or "Job failed"
    job.finished_at = utcnow()
    return job


def visible_state(job: Job, paused: bool) -> Job:
    if paused and job.state == JobState.WAITING:
        return job.model_copy(update={"state": JobState.PAUSED})
    return job


@dataclass(slots=True)
class _QueueState:
    config: QueueConfig
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    jobs: Dict[str, Job] = field(default_factory=dict)
    waiting: List[Tuple[int, int, str]] = field(default_factory=list)
    delayed: List[Tuple[int, int, str]] = field(default_factory=list)
    active: Set[str] = field(default_factory=set)
    completed: Deque[str] = field(default_factory=deque)
    failed: Deque[str] = field(default_factory=deque)
    paused: bool = False
    sequence: int = 0
    limiter: Optional[RollingWindowRateLimiter] = None


class InMemoryQueueStore(QueueStore):
    """Process-local store; every operation on a queue runs under that queue's lock."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        super().__init__(clock)
        self._queues: Dict[str, _QueueState] = {}

    async def _on_register(self, queue_name: str, config: QueueConfig) -> None:
        limiter = (
            RollingWindowRateLimiter(config.rate_limiter)
            if config.rate_limiter is not None
            else None
        )
        self._queues[queue_name] = _QueueState(config=config, limiter=limiter)

    def _state(self, queue_name: str) -> _QueueState:
        self._require_queue(queue_name)
        return self._queues[queue_name]

    async def enqueue(self, job: Job, delay_ms: int = 0) -> str:
        state = self._state(job.queue_name)
        async with state.lock:
            state.sequence += 1
            job.sequence = state.sequence
            if delay_ms > 0:
                job.state = JobState.DELAYED
                heapq.heappush(
                    state.delayed, (self._clock() + delay_ms, job.sequence, job.id)
                )
            else:
                job.state = JobState.WAITING
                heapq.heappush(state.waiting, (job.rank, job.sequence, job.id))
            state.jobs[job.id] = job
        return job.id

    def _promote_due(self, state: _QueueState, now: int) -> None:
        while state.delayed and state.delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(state.delayed)
            job = state.jobs.get(job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            heapq.heappush(state.waiting, (job.rank, job.sequence, job.id))

    def _next_delayed_in(self, state: _QueueState, now: int) -> Optional[int]:
        if not state.delayed:
            return None
        return max(1, state.delayed[0][0] - now)

    async def reserve(self, queue_name: str) -> Reservation:
        state = self._state(queue_name)
        async with state.lock:
            now = self._clock()
            self._promote_due(state, now)

            if state.paused or len(state.active) >= state.config.concurrency:
                return Reservation()

            if not state.waiting:
                return Reservation(retry_after_ms=self._next_delayed_in(state, now))

            if state.limiter is not None:
                decision = state.limiter.try_acquire(now)
                if not decision.allowed:
                    return Reservation(retry_after_ms=decision.retry_after_ms)

            _, _, job_id = heapq.heappop(state.waiting)
            job = apply_reserved(state.jobs[job_id])
            state.active.add(job_id)
            return Reservation(job=job.model_copy(deep=True))

    async def update_progress(self, queue_name: str, job_id: str, progress: int) -> None:
        state = self._state(queue_name)
        async with state.lock:
            job = state.jobs.get(job_id)
            if job is not None:
                job.progress = progress

    def _evict(self, state: _QueueState, bucket: Deque[str], keep: int) -> None:
        while len(bucket) > keep:
            evicted = bucket.popleft()
            state.jobs.pop(evicted, None)

    async def complete(self, queue_name: str, job_id: str, result: JobResult) -> None:
        state = self._state(queue_name)
        async with state.lock:
            state.active.discard(job_id)
            job = state.jobs.get(job_id)
            if job is None:
                return
            apply_completed(job, result)
            state.completed.append(job_id)
            self._evict(state, state.completed, state.config.keep_completed)

    async def retry_later(
        self, queue_name: str, job_id: str, result: JobResult, delay_ms: int
    ) -> None:
        state = self._state(queue_name)
        async with state.lock:
            state.active.discard(job_id)
            job = state.jobs.get(job_id)
            if job is None:
                return
            apply_retry(job, result)
            heapq.heappush(
                state.delayed, (self._clock() + max(0, delay_ms), job.sequence, job_id)
            )

    async def fail(self, queue_name: str, job_id: str, result: JobResult) -> None:
        state = self._state(queue_name)
        async with state.lock:
            state.active.discard(job_id)
            job = state.jobs.get(job_id)
            if job is None:
                return
            apply_failed(job, result)
            state.failed.append(job_id)
            self._evict(state, state.failed, state.config.keep_failed)

    async def release(self, queue_name: str, job_id: str, reason: str) -> None:
        state = self._state(queue_name)
        async with state.lock:
            if job_id not in state.active:
                return
            state.active.discard(job_id)
            job = state.jobs.get(job_id)
            if job is None:
                return
            result = JobResult(success=False, error=reason)
            if job.attempts < job.max_attempts:
                apply_retry(job, result)
                heapq.heappush(state.delayed, (self._clock(), job.sequence, job_id))
            else:
                apply_failed(job, result)
                state.failed.append(job_id)
                self._evict(state, state.failed, state.config.keep_failed)

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        state = self._state(queue_name)
        async with state.lock:
            self._promote_due(state, self._clock())
            job = state.jobs.get(job_id)
            if job is None:
                return None
            return visible_state(job.model_copy(deep=True), state.paused)

    async def counts(self, queue_name: str) -> QueueCounts:
        state = self._state(queue_name)
        async with state.lock:
            self._promote_due(state, self._clock())
            waiting = len(state.waiting)
            return QueueCounts(
                waiting=0 if state.paused else waiting,
                paused=waiting if state.paused else 0,
                active=len(state.active),
                completed=len(state.completed),
                failed=len(state.failed),
                delayed=len(state.delayed),
            )

    async def pause(self, queue_name: str) -> None:
        state = self._state(queue_name)
        async with state.lock:
            state.paused = True

    async def resume(self, queue_name: str) -> None:
        state = self._state(queue_name)
        async with state.lock:
            state.paused = False

    async def is_paused(self, queue_name: str) -> bool:
        return self._state(queue_name).paused
