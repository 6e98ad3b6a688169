"""Per-attempt job metrics.

The recorder consumes ``AttemptOutcome`` messages from the worker pools'
shared channel. For each attempt it bumps a Prometheus counter, observes the
duration histogram, logs a metric event and persists a ``JobMetricsRecord``
through the configured sink. Sink failures are retried and then logged; they
never reach the workers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram
from tenacity import retry, stop_after_attempt, wait_random_exponential

from artscout.jobs.collaborators import JobMetricsSink
from artscout.jobs.job_models import AttemptOutcome, JobMetricsRecord
from artscout.main.logging import get_logger

logger = get_logger(__name__)

ATTEMPTS_METRIC = "artscout_job_attempts"
DURATION_METRIC = "artscout_job_duration_seconds"
DURATION_BUCKETS_SECONDS = (0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0)


@dataclass(frozen=True)
class JobMetricFamilies:
    attempts: Counter
    duration: Histogram


@lru_cache(maxsize=None)
def job_metric_families(registry: CollectorRegistry = REGISTRY) -> JobMetricFamilies:
    """Register the job metrics once per registry."""
    return JobMetricFamilies(
        attempts=Counter(
            ATTEMPTS_METRIC,
            "Job attempts by outcome (completed, retried, failed)",
            ["queue", "status"],
            registry=registry,
        ),
        duration=Histogram(
            DURATION_METRIC,
            "Handler run time per job attempt",
            ["queue"],
            buckets=DURATION_BUCKETS_SECONDS,
            registry=registry,
        ),
    )


class JobMetricsRecorder:
    def __init__(
        self,
        outcomes: "asyncio.Queue[AttemptOutcome]",
        sink: Optional[JobMetricsSink] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.outcomes = outcomes
        self.sink = sink
        self.registry = registry or REGISTRY
        self.families = job_metric_families(self.registry)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._consume(), name="job-metrics-recorder")

    async def stop(self) -> None:
        """Record everything still queued, then stop consuming."""
        if self._task is None:
            return
        await self.outcomes.join()
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _consume(self) -> None:
        while True:
            outcome = await self.outcomes.get()
            try:
                await self.record(outcome)
            except Exception as exc:
                logger.error(
                    "Failed to record job metrics",
                    exc_info=exc,
                    extra={"job_id": outcome.job_id, "queue_name": outcome.queue_name},
                )
            finally:
                self.outcomes.task_done()

    async def record(self, outcome: AttemptOutcome) -> None:
        result = outcome.result
        if result.success:
            status = "completed"
        elif outcome.final:
            status = "failed"
        else:
            status = "retried"

        self.families.attempts.labels(queue=outcome.queue_name, status=status).inc()
        self.families.duration.labels(queue=outcome.queue_name).observe(
            result.processing_time_ms / 1000
        )

        logger.info(
            "Job attempt finished",
            extra={
                "job_id": outcome.job_id,
                "queue_name": outcome.queue_name,
                "attempt": outcome.attempt,
                "status": status,
                "duration_ms": result.processing_time_ms,
                "retry_delay_ms": outcome.retry_delay_ms,
                "metric_name": f"jobs.{status}",
                "metric_value": 1,
            },
        )

        if self.sink is None:
            return

        record = JobMetricsRecord(
            operation=outcome.job_type.value,
            queue_name=outcome.queue_name,
            job_id=outcome.job_id,
            attempts=outcome.attempt,
            success=result.success,
            response_time_ms=result.processing_time_ms,
            error_message=result.error,
        )
        try:
            await self._persist(record)
        except Exception as exc:
            logger.error(
                "Failed to persist job metrics",
                exc_info=exc,
                extra={"job_id": outcome.job_id, "queue_name": outcome.queue_name},
            )

    @retry(
        wait=wait_random_exponential(min=0.1, max=2),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _persist(self, record: JobMetricsRecord) -> None:
        await self.sink.record_job_metrics(record)

    def count(self, queue_name: str, status: str) -> int:
        value = self.registry.get_sample_value(
            f"{ATTEMPTS_METRIC}_total", {"queue": queue_name, "status": status}
        )
        return int(value or 0)

    def observed(self, queue_name: str) -> int:
        """Number of attempts in the duration histogram for ``queue_name``."""
        value = self.registry.get_sample_value(
            f"{DURATION_METRIC}_count", {"queue": queue_name}
        )
        return int(value or 0)
