from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from artscout.jobs.backoff import BackoffConfig, BackoffType, RetryPolicy
from artscout.jobs.job_models import JobType
from artscout.jobs.rate_limit import RateLimitConfig
from artscout.main.config import Settings, get_settings


@dataclass(frozen=True, slots=True)
class QueueConfig:
    """Static per-queue settings; fixed once the queue is registered."""

    concurrency: int
    retry_policy: RetryPolicy
    rate_limiter: Optional[RateLimitConfig] = None
    keep_completed: int = 10
    keep_failed: int = 20

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.keep_completed < 0 or self.keep_failed < 0:
            raise ValueError("retention counts cannot be negative")


DEFAULT_QUEUE_CONFIGS: dict[JobType, QueueConfig] = {
    JobType.SEARCH_EXECUTION: QueueConfig(
        concurrency=2,
        rate_limiter=RateLimitConfig(max=5, duration_ms=60_000),
        retry_policy=RetryPolicy(
            attempts=3, backoff=BackoffConfig(BackoffType.EXPONENTIAL, 5_000)
        ),
        keep_completed=10,
        keep_failed=20,
    ),
    # Scraping queues run one job at a time to stay polite to remote sites
    JobType.ORGANIZATION_SCRAPING: QueueConfig(
        concurrency=1,
        rate_limiter=RateLimitConfig(max=2, duration_ms=300_000),
        retry_policy=RetryPolicy(
            attempts=2, backoff=BackoffConfig(BackoffType.EXPONENTIAL, 10_000)
        ),
        keep_completed=5,
        keep_failed=10,
    ),
    JobType.RESULT_PROCESSING: QueueConfig(
        concurrency=3,
        rate_limiter=RateLimitConfig(max=10, duration_ms=60_000),
        retry_policy=RetryPolicy(
            attempts=3, backoff=BackoffConfig(BackoffType.EXPONENTIAL, 2_000)
        ),
        keep_completed=20,
        keep_failed=50,
    ),
    JobType.DATA_VALIDATION: QueueConfig(
        concurrency=5,
        rate_limiter=RateLimitConfig(max=20, duration_ms=60_000),
        retry_policy=RetryPolicy(
            attempts=2, backoff=BackoffConfig(BackoffType.FIXED, 1_000)
        ),
        keep_completed=50,
        keep_failed=100,
    ),
    JobType.BOOKMARK_SCRAPING: QueueConfig(
        concurrency=1,
        rate_limiter=RateLimitConfig(max=1, duration_ms=300_000),
        retry_policy=RetryPolicy(
            attempts=2, backoff=BackoffConfig(BackoffType.EXPONENTIAL, 15_000)
        ),
        keep_completed=5,
        keep_failed=10,
    ),
    JobType.CLEANUP: QueueConfig(
        concurrency=1,
        retry_policy=RetryPolicy(
            attempts=1, backoff=BackoffConfig(BackoffType.FIXED, 0)
        ),
        keep_completed=2,
        keep_failed=5,
    ),
}


def build_queue_configs(settings: Settings | None = None) -> dict[JobType, QueueConfig]:
    """Default queue table with the configured exponential backoff ceiling applied."""
    resolved_settings = settings or get_settings()
    configs: dict[JobType, QueueConfig] = {}
    for job_type, config in DEFAULT_QUEUE_CONFIGS.items():
        backoff = replace(
            config.retry_policy.backoff,
            max_delay_ms=resolved_settings.max_backoff_delay_ms,
        )
        configs[job_type] = replace(
            config, retry_policy=replace(config.retry_policy, backoff=backoff)
        )
    return configs
