"""Lease renewal for jobs held by a worker.

While a handler runs, the worker keeps a ``LeaseHeartbeat`` going that
extends the job's lease in the queue store. A store that never expires its
holds (``heartbeat_interval_ms is None``) needs no heartbeat.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from artscout.jobs.queue_store import QueueStore
from artscout.main.logging import get_logger

logger = get_logger(__name__)


class LeaseHeartbeat:
    """Extends one job's lease every ``interval_seconds`` until stopped.

    Failures are counted; once ``max_failures`` renewals in a row have
    failed the heartbeat gives up and the lease is left to expire, so the
    job is reclaimed by another worker instead of being held forever by one
    that has lost its connection.

    Example:
        heartbeat = LeaseHeartbeat(store, "search", job.id, interval_seconds=20)
        heartbeat.start()
        try:
            await handler(...)
        finally:
            await heartbeat.stop()
    """

    def __init__(
        self,
        store: QueueStore,
        queue_name: str,
        job_id: str,
        interval_seconds: float,
        max_failures: int = 3,
    ):
        self._store = store
        self._queue_name = queue_name
        self._job_id = job_id
        self._interval_seconds = interval_seconds
        self._max_failures = max_failures
        self._consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"{self._queue_name}-heartbeat-{self._job_id}"
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while self._consecutive_failures < self._max_failures:
            await asyncio.sleep(self._interval_seconds)
            await self.tick()

        logger.error(
            "Lease heartbeat stopped after repeated failures",
            extra={
                "job_id": self._job_id,
                "queue_name": self._queue_name,
                "consecutive_failures": self._consecutive_failures,
                "max_failures": self._max_failures,
            },
        )

    async def tick(self) -> None:
        """Extend the lease once."""
        try:
            await self._store.extend_lease(self._queue_name, self._job_id)
        except Exception as exc:
            self._consecutive_failures += 1
            logger.warning(
                "Lease heartbeat failed",
                exc_info=exc,
                extra={
                    "job_id": self._job_id,
                    "queue_name": self._queue_name,
                    "consecutive_failures": self._consecutive_failures,
                    "max_failures": self._max_failures,
                },
            )
            return
        self._consecutive_failures = 0
