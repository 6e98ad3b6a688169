"""Concurrent workers draining one queue."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from tenacity import retry, stop_after_attempt, wait_random_exponential

from artscout.jobs.backoff import compute_backoff_delay, should_retry
from artscout.jobs.heartbeat import LeaseHeartbeat
from artscout.jobs.job_models import AttemptOutcome, Job, JobResult, JobType
from artscout.jobs.queue_config import QueueConfig
from artscout.jobs.queue_store import QueueStore
from artscout.main.job_context import clear_job_context, set_job_context
from artscout.main.logging import get_logger

logger = get_logger(__name__)


class ProgressReporter:
    """Handle passed to job handlers for reporting completion percentage."""

    def __init__(self, store: QueueStore, queue_name: str, job_id: str):
        self._store = store
        self._queue_name = queue_name
        self._job_id = job_id
        self.latest = 0

    async def __call__(self, progress: float) -> None:
        value = max(0, min(100, int(progress)))
        self.latest = value
        await self._store.update_progress(self._queue_name, self._job_id, value)


class JobHandler(Protocol):
    def __call__(
        self, payload: dict[str, Any], progress: ProgressReporter
    ) -> Awaitable[dict[str, Any]]: ...


class WorkerPool:
    """Runs ``concurrency`` workers for a queue.

    Each worker asks the store for the next job; the store only hands one out
    while the queue is below its concurrency and inside its rate window, so a
    blocked worker never consumes a job. Handler exceptions become failed
    results and go through the retry path. One ``AttemptOutcome`` per attempt
    is put on ``outcomes``.

    Writing the outcome to the store is retried; if it keeps failing the job
    is released back to the store and the attempt is reported as failed.
    """

    def __init__(
        self,
        queue_name: str,
        store: QueueStore,
        config: QueueConfig,
        handler_for: Callable[[JobType], JobHandler],
        outcomes: "asyncio.Queue[AttemptOutcome]",
        poll_interval_seconds: float = 1.0,
    ):
        self.queue_name = queue_name
        self.store = store
        self.config = config
        self._handler_for = handler_for
        self._outcomes = outcomes
        self._poll_interval = poll_interval_seconds
        self._wakeup = asyncio.Event()
        self._stopping = False
        self._tasks: list[asyncio.Task] = []
        self.in_flight = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    def start(self) -> None:
        if self._tasks:
            return
        self._stopping = False
        for index in range(self.config.concurrency):
            task = asyncio.create_task(
                self._worker_loop(index), name=f"{self.queue_name}-worker-{index}"
            )
            self._tasks.append(task)
        logger.info(
            "Worker pool started",
            extra={"queue_name": self.queue_name, "concurrency": self.config.concurrency},
        )

    def notify(self) -> None:
        """Wake idle workers, e.g. after an enqueue or a resume."""
        self._wakeup.set()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop taking new jobs and wait for in-flight ones to finish."""
        if not self._tasks:
            return
        self._stopping = True
        self.notify()

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "Cancelled workers still running at shutdown",
                extra={"queue_name": self.queue_name, "cancelled": len(pending)},
            )
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Worker exited with error",
                    exc_info=task.exception(),
                    extra={"queue_name": self.queue_name},
                )
        self._tasks = []

    async def _wait_for_work(self, retry_after_ms: Optional[int]) -> None:
        timeout = self._poll_interval
        if retry_after_ms is not None:
            timeout = min(timeout, retry_after_ms / 1000)
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping:
            self._wakeup.clear()
            try:
                reservation = await self.store.reserve(self.queue_name)
            except Exception as exc:
                logger.error(
                    "Failed to reserve job",
                    exc_info=exc,
                    extra={"queue_name": self.queue_name, "worker": index},
                )
                await self._wait_for_work(None)
                continue

            if reservation.job is None:
                await self._wait_for_work(reservation.retry_after_ms)
                continue

            await self._process(reservation.job)
            # A freed slot may let a sibling worker proceed
            self.notify()

    async def _process(self, job: Job) -> None:
        self.in_flight += 1
        set_job_context(job_id=job.id, queue_name=self.queue_name)
        progress = ProgressReporter(self.store, self.queue_name, job.id)
        heartbeat = self._heartbeat_for(job)
        started = time.monotonic()
        try:
            try:
                result = await self._run_handler(job, progress, started)
            finally:
                # Renewal ends before the outcome is written
                if heartbeat is not None:
                    await heartbeat.stop()
        except asyncio.CancelledError:
            # Shutdown gave up on this attempt; it still counts
            await self._settle(
                job,
                JobResult(
                    success=False,
                    error="Worker shut down",
                    processing_time_ms=int((time.monotonic() - started) * 1000),
                    metadata={"attempt": job.attempts, "queue_name": self.queue_name},
                ),
            )
            raise
        else:
            await self._settle(job, result)
        finally:
            self.in_flight -= 1
            clear_job_context()

    def _heartbeat_for(self, job: Job) -> Optional[LeaseHeartbeat]:
        interval_ms = self.store.heartbeat_interval_ms
        if interval_ms is None:
            return None
        heartbeat = LeaseHeartbeat(
            self.store, self.queue_name, job.id, interval_seconds=interval_ms / 1000
        )
        heartbeat.start()
        return heartbeat

    async def _run_handler(
        self, job: Job, progress: ProgressReporter, started: float
    ) -> JobResult:
        metadata = {"attempt": job.attempts, "queue_name": self.queue_name}
        try:
            handler = self._handler_for(job.type)
            data = await handler(job.payload, progress)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Job attempt failed",
                exc_info=exc,
                extra={
                    "job_id": job.id,
                    "queue_name": self.queue_name,
                    "attempt": job.attempts,
                    "max_attempts": job.max_attempts,
                },
            )
            return JobResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                metadata=metadata,
            )

        return JobResult(
            success=True,
            data=data if isinstance(data, dict) else {"value": data},
            processing_time_ms=int((time.monotonic() - started) * 1000),
            metadata=metadata,
        )

    async def _settle(self, job: Job, result: JobResult) -> None:
        retry_delay_ms: Optional[int] = None
        if not result.success and should_retry(job.attempts, job.max_attempts):
            retry_delay_ms = compute_backoff_delay(
                self.config.retry_policy.backoff, job.attempts
            )
        final = result.success or retry_delay_ms is None

        try:
            await self._record(job, result, retry_delay_ms)
        except Exception as exc:
            logger.error(
                "Failed to record job outcome in queue store",
                exc_info=exc,
                extra={"job_id": job.id, "queue_name": self.queue_name},
            )
            reason = f"Failed to record job outcome: {exc}"
            await self._release(job, reason)
            # The store never saw this attempt's result; report it as failed
            result = JobResult(
                success=False,
                error=reason,
                processing_time_ms=result.processing_time_ms,
                metadata=result.metadata,
            )
            retry_delay_ms = None
            final = not should_retry(job.attempts, job.max_attempts)
        else:
            if not result.success and final:
                logger.error(
                    "Job failed permanently",
                    extra={
                        "job_id": job.id,
                        "queue_name": self.queue_name,
                        "attempts": job.attempts,
                        "error": result.error,
                    },
                )

        self._outcomes.put_nowait(
            AttemptOutcome(
                job_id=job.id,
                queue_name=self.queue_name,
                job_type=job.type,
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                result=result,
                retry_delay_ms=retry_delay_ms,
                final=final,
            )
        )

    @retry(
        wait=wait_random_exponential(min=0.1, max=2),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _record(
        self, job: Job, result: JobResult, retry_delay_ms: Optional[int]
    ) -> None:
        if result.success:
            await self.store.complete(self.queue_name, job.id, result)
        elif retry_delay_ms is not None:
            await self.store.retry_later(self.queue_name, job.id, result, retry_delay_ms)
        else:
            await self.store.fail(self.queue_name, job.id, result)

    async def _release(self, job: Job, reason: str) -> None:
        try:
            await self.store.release(self.queue_name, job.id, reason)
        except Exception as exc:
            # A lease-backed store reclaims the job once its lease runs out
            logger.error(
                "Failed to release job",
                exc_info=exc,
                extra={"job_id": job.id, "queue_name": self.queue_name},
            )
