import logging
import os
import sys
from typing import Optional

from pydantic import computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="allow")

    app_version: str = os.environ.get("ARTSCOUT_VERSION", "DEV")

    # Infrastructure dependencies
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: Optional[int] = None
    redis_conn_timeout: int = 5
    redis_conn_retries: int = 5
    redis_conn_retry_delay: int = 1
    redis_retry_on_timeout: bool = True
    redis_socket_keepalive: bool = True
    redis_health_check_interval: int = 30
    redis_max_connections: Optional[int] = None

    postgres_user: Optional[str] = None
    postgres_host: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_port: int = 5432
    postgres_db: Optional[str] = None
    postgres_pool_size: int = 10
    postgres_max_overflow: int = 5

    # Queue store and worker pools
    queue_key_prefix: str = "artscout"
    worker_poll_interval_seconds: float = 1.0
    worker_shutdown_timeout_seconds: float = 60.0
    max_backoff_delay_ms: int = 60 * 60 * 1000  # 1 hour cap for exponential backoff
    # Redis store: a reservation is held for this long unless its worker heartbeats
    worker_lease_seconds: float = 60.0

    # Search orchestrator
    search_min_execution_interval_seconds: float = 5.0
    search_poll_interval_seconds: float = 2.0
    search_completion_timeout_seconds: float = 5 * 60
    search_relevance_threshold: float = 0.6
    search_analysis_max_concurrent: int = 3
    search_max_queries_per_profile: int = 15
    search_max_results: int = 15
    execution_ttl_seconds: int = 60 * 60 * 24

    # search-execution job handler
    search_job_poll_interval_seconds: float = 10.0
    search_job_max_polls: int = 60

    # Dev
    testing: bool = False
    dev: bool = False

    @model_validator(mode="after")
    def validate_worker_settings(self):
        """Ensure worker and orchestrator timing values are sane."""
        positive = {
            "WORKER_POLL_INTERVAL_SECONDS": self.worker_poll_interval_seconds,
            "WORKER_LEASE_SECONDS": self.worker_lease_seconds,
            "SEARCH_POLL_INTERVAL_SECONDS": self.search_poll_interval_seconds,
            "SEARCH_COMPLETION_TIMEOUT_SECONDS": self.search_completion_timeout_seconds,
            "SEARCH_JOB_POLL_INTERVAL_SECONDS": self.search_job_poll_interval_seconds,
            "SEARCH_JOB_MAX_POLLS": self.search_job_max_polls,
            "SEARCH_ANALYSIS_MAX_CONCURRENT": self.search_analysis_max_concurrent,
            "SEARCH_MAX_QUERIES_PER_PROFILE": self.search_max_queries_per_profile,
            "EXECUTION_TTL_SECONDS": self.execution_ttl_seconds,
            "POSTGRES_POOL_SIZE": self.postgres_pool_size,
        }
        for name, value in positive.items():
            if value <= 0:
                logging.error(
                    "%s must be greater than zero. Current value: %s", name, value
                )
                sys.exit(1)

        if self.search_min_execution_interval_seconds < 0:
            logging.error(
                "SEARCH_MIN_EXECUTION_INTERVAL_SECONDS cannot be negative. Current value: %s",
                self.search_min_execution_interval_seconds,
            )
            sys.exit(1)

        if not 0 <= self.search_relevance_threshold <= 1:
            logging.error(
                "SEARCH_RELEVANCE_THRESHOLD must be within [0, 1]. Current value: %s",
                self.search_relevance_threshold,
            )
            sys.exit(1)

        if self.max_backoff_delay_ms <= 0:
            logging.error(
                "MAX_BACKOFF_DELAY_MS must be greater than zero. Current value: %s",
                self.max_backoff_delay_ms,
            )
            sys.exit(1)

        return self

    @computed_field
    @property
    def database_url(self) -> Optional[str]:
        if not (self.postgres_user and self.postgres_host and self.postgres_db):
            return None
        return (
            f"postgresql+asyncpg://{self.postgres_user}:"
            f"{self.postgres_password or ''}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get settings singleton, creating it if needed."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Override settings (primarily for testing)."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Reset settings to None (for test cleanup)."""
    global _settings
    _settings = None


def get_loglevel():
    loglevel = os.getenv("LOGLEVEL", "INFO")

    match loglevel:
        case "INFO":
            return logging.INFO
        case "WARNING":
            return logging.WARNING
        case "ERROR":
            return logging.ERROR
        case "CRITICAL":
            return logging.CRITICAL
        case "DEBUG":
            return logging.DEBUG
        case _:
            return logging.INFO
