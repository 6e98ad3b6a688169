import pytest

from artscout.main.config import Settings, reset_settings


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings with explicit values for unit tests.

    Intervals are kept tiny so pipelines and worker loops finish quickly,
    and nothing depends on a .env file or environment variables.
    """
    return Settings(
        # Minimal database settings (not used in unit tests)
        postgres_user="unit_test_user",
        postgres_host="localhost",
        postgres_password="unit_test_password",
        postgres_port=5432,
        postgres_db="unit_test_db",

        # Redis settings (not used in unit tests)
        redis_host="localhost",
        redis_port=6379,

        # Queues
        queue_key_prefix="artscout-test",
        worker_poll_interval_seconds=0.01,
        worker_shutdown_timeout_seconds=1,

        # Search pipeline
        search_min_execution_interval_seconds=0,
        search_poll_interval_seconds=0.01,
        search_completion_timeout_seconds=2,
        search_job_poll_interval_seconds=0.01,
        search_job_max_polls=5,

        # Testing mode
        testing=True,
        dev=True,
    )


@pytest.fixture(autouse=True)
def reset_settings_after_test():
    """Reset settings after each test to prevent state leakage."""
    yield
    reset_settings()
