from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping, Optional, Union
from uuid import uuid4

from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from artscout.jobs.collaborators import JobMetricsSink
from artscout.jobs.cron import parse_cron
from artscout.jobs.handlers import JobHandlers
from artscout.jobs.job_models import (
    AttemptOutcome,
    Job,
    JobData,
    JobStatusView,
    JobType,
    QueueStats,
    utcnow,
)
from artscout.jobs.metrics import JobMetricsRecorder
from artscout.jobs.queue_config import QueueConfig, build_queue_configs
from artscout.jobs.queue_store import InMemoryQueueStore, QueueStore
from artscout.jobs.recurring import RecurringScheduler
from artscout.jobs.worker_pool import WorkerPool
from artscout.main.config import Settings, get_settings
from artscout.main.exceptions import (
    MalformedIdentifierError,
    NotReadyException,
    UnknownJobTypeError,
)
from artscout.main.logging import get_logger

logger = get_logger(__name__)

JobDataLike = Union[JobData, Mapping[str, Any]]


class JobProcessor:
    """Owns the queues, their worker pools and the handler registry.

    Jobs may be added before ``start()``; they wait in their queue until the
    pools run. After ``cleanup()`` the processor refuses further work.
    """

    def __init__(
        self,
        handlers: JobHandlers,
        store: Optional[QueueStore] = None,
        *,
        metrics_sink: Optional[JobMetricsSink] = None,
        metrics_registry: Optional[CollectorRegistry] = None,
        queue_configs: Optional[Mapping[JobType, QueueConfig]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.handlers = handlers
        self.store = store or InMemoryQueueStore()
        self.queue_configs: Dict[JobType, QueueConfig] = dict(
            queue_configs or build_queue_configs(self.settings)
        )
        self.outcomes: asyncio.Queue[AttemptOutcome] = asyncio.Queue()
        self.metrics = JobMetricsRecorder(
            self.outcomes, metrics_sink, registry=metrics_registry
        )
        self.scheduler = RecurringScheduler(self.add_job)
        self.pools: Dict[str, WorkerPool] = {}

        self._queues_ready = False
        self._started = False
        self._closing = False
        self._closed = False
        self._lifecycle_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _ensure_queues(self) -> None:
        if self._queues_ready:
            return
        for job_type, config in self.queue_configs.items():
            await self.store.register_queue(job_type.queue_name, config)
            self.pools[job_type.queue_name] = WorkerPool(
                queue_name=job_type.queue_name,
                store=self.store,
                config=config,
                handler_for=self.handlers.for_type,
                outcomes=self.outcomes,
                poll_interval_seconds=self.settings.worker_poll_interval_seconds,
            )
        self._queues_ready = True

    def _ensure_open(self) -> None:
        if self._closing or self._closed:
            raise NotReadyException("Job processor has been shut down")

    async def start(self) -> None:
        async with self._lifecycle_lock:
            self._ensure_open()
            if self._started:
                return
            await self._ensure_queues()
            self.metrics.start()
            for pool in self.pools.values():
                pool.start()
            self.scheduler.start()
            self._started = True
        logger.info("Job processor started", extra={"queues": list(self.pools)})

    async def cleanup(self) -> None:
        """Stop schedules and workers, flush metrics and close the store.

        Waits for in-flight jobs up to ``worker_shutdown_timeout_seconds``.
        Safe to call more than once and from a signal handler task.
        """
        self._closing = True
        async with self._lifecycle_lock:
            if self._closed:
                return
            logger.info("Shutting down job processor")
            await self.scheduler.stop()
            await asyncio.gather(
                *(
                    pool.stop(timeout=self.settings.worker_shutdown_timeout_seconds)
                    for pool in self.pools.values()
                )
            )
            await self.metrics.stop()
            try:
                await self.store.close()
            except Exception as exc:
                logger.error("Failed to close queue store", exc_info=exc)
            self._closed = True
            self._started = False
        logger.info("Job processor shut down")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def _coerce_job_data(self, job_data: JobDataLike) -> JobData:
        if isinstance(job_data, JobData):
            resolved = job_data
        else:
            raw_type = job_data.get("type")
            if isinstance(raw_type, JobType):
                raw_type = raw_type.value
            if raw_type not in {t.value for t in JobType}:
                raise UnknownJobTypeError(raw_type)
            try:
                resolved = JobData.model_validate(job_data)
            except ValidationError as exc:
                raise MalformedIdentifierError(f"Invalid job data: {exc}") from exc

        if resolved.type not in self.queue_configs:
            raise UnknownJobTypeError(resolved.type.value)
        return resolved

    async def add_job(self, job_data: JobDataLike) -> str:
        self._ensure_open()
        data = self._coerce_job_data(job_data)
        await self._ensure_queues()

        config = self.queue_configs[data.type]
        delay_ms = 0
        if data.scheduled_for is not None:
            delay_ms = max(0, int((data.scheduled_for - utcnow()).total_seconds() * 1000))

        job = Job(
            id=str(uuid4()),
            type=data.type,
            queue_name=data.type.queue_name,
            payload=dict(data.payload),
            priority=data.priority,
            rank=data.priority.rank,
            max_attempts=data.retry_attempts or config.retry_policy.attempts,
            scheduled_for=data.scheduled_for,
            user_id=data.user_id,
            profile_id=data.profile_id,
        )
        job_id = await self.store.enqueue(job, delay_ms)
        self.pools[job.queue_name].notify()

        logger.info(
            "Job added",
            extra={
                "job_id": job_id,
                "queue_name": job.queue_name,
                "priority": job.priority.value,
                "delay_ms": delay_ms,
            },
        )
        return job_id

    def _validate_queue_name(self, queue_name: str) -> None:
        if not isinstance(queue_name, str) or queue_name not in {
            t.queue_name for t in self.queue_configs
        }:
            raise MalformedIdentifierError(f"Unknown queue: {queue_name!r}")

    async def get_job_status(self, job_id: str, queue_name: str) -> Optional[JobStatusView]:
        if not isinstance(job_id, str) or not job_id.strip():
            raise MalformedIdentifierError("Job id must be a non-empty string")
        self._validate_queue_name(queue_name)
        await self._ensure_queues()

        job = await self.store.get_job(queue_name, job_id)
        if job is None:
            return None
        return JobStatusView.from_job(job)

    async def get_queue_stats(self) -> Dict[str, QueueStats]:
        await self._ensure_queues()
        stats: Dict[str, QueueStats] = {}
        for queue_name in self.pools:
            counts = await self.store.counts(queue_name)
            stats[queue_name] = QueueStats(
                name=queue_name,
                is_paused=await self.store.is_paused(queue_name),
                **counts.model_dump(),
            )
        return stats

    async def pause_queue(self, queue_name: str) -> None:
        self._validate_queue_name(queue_name)
        await self._ensure_queues()
        await self.store.pause(queue_name)
        logger.info("Queue paused", extra={"queue_name": queue_name})

    async def resume_queue(self, queue_name: str) -> None:
        self._validate_queue_name(queue_name)
        await self._ensure_queues()
        await self.store.resume(queue_name)
        self.pools[queue_name].notify()
        logger.info("Queue resumed", extra={"queue_name": queue_name})

    # ------------------------------------------------------------------
    # Recurring jobs
    # ------------------------------------------------------------------
    async def schedule_recurring_job(
        self, job_data: JobDataLike, cron_expression: str
    ) -> str:
        self._ensure_open()
        data = self._coerce_job_data(job_data)
        schedule = parse_cron(cron_expression)
        return self.scheduler.add(data, schedule)

    def cancel_recurring_job(self, schedule_id: str) -> bool:
        return self.scheduler.cancel(schedule_id)
