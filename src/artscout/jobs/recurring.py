from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional
from uuid import uuid4

from artscout.jobs.cron import CronSchedule
from artscout.jobs.job_models import JobData, utcnow
from artscout.main.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RecurringSchedule:
    id: str
    job_data: JobData
    cron: CronSchedule
    next_run_at: Optional[datetime] = None
    last_job_id: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class RecurringScheduler:
    """Enqueues a fresh copy of a job every time its cron schedule fires."""

    def __init__(
        self,
        enqueue: Callable[[JobData], Awaitable[str]],
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._enqueue = enqueue
        self._clock = clock
        self._sleep = sleep
        self._schedules: Dict[str, RecurringSchedule] = {}
        self._running = False

    @property
    def schedules(self) -> Dict[str, RecurringSchedule]:
        return dict(self._schedules)

    def add(self, job_data: JobData, cron: CronSchedule) -> str:
        schedule = RecurringSchedule(id=str(uuid4()), job_data=job_data, cron=cron)
        self._schedules[schedule.id] = schedule
        if self._running:
            self._launch(schedule)
        logger.info(
            "Recurring job scheduled",
            extra={
                "schedule_id": schedule.id,
                "job_type": job_data.type.value,
                "cron": cron.expression,
            },
        )
        return schedule.id

    def cancel(self, schedule_id: str) -> bool:
        schedule = self._schedules.pop(schedule_id, None)
        if schedule is None:
            return False
        if schedule.task is not None:
            schedule.task.cancel()
        return True

    def start(self) -> None:
        self._running = True
        for schedule in self._schedules.values():
            if schedule.task is None or schedule.task.done():
                self._launch(schedule)

    async def stop(self) -> None:
        self._running = False
        tasks = [s.task for s in self._schedules.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for schedule in self._schedules.values():
            schedule.task = None

    def _launch(self, schedule: RecurringSchedule) -> None:
        schedule.task = asyncio.create_task(
            self._run(schedule), name=f"recurring-{schedule.id}"
        )

    async def _run(self, schedule: RecurringSchedule) -> None:
        last_fire: Optional[datetime] = None
        while True:
            now = self._clock()
            # Sleeping can wake marginally early; never fire the same slot twice
            reference = max(now, last_fire) if last_fire is not None else now
            fire_at = schedule.cron.next_after(reference)
            schedule.next_run_at = fire_at

            await self._sleep(max(0.0, (fire_at - self._clock()).total_seconds()))
            last_fire = fire_at

            try:
                schedule.last_job_id = await self._enqueue(
                    schedule.job_data.model_copy(deep=True)
                )
            except Exception as exc:
                logger.error(
                    "Failed to enqueue recurring job",
                    exc_info=exc,
                    extra={"schedule_id": schedule.id, "cron": schedule.cron.expression},
                )
