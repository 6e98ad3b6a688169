"""Process wiring for a worker that runs the job queues and search pipelines.

The external services (query generation, analysis, web search, scrapers,
stores) are supplied by the embedding application through
``WorkerCollaborators``. Queue and execution state live in Redis so that
several worker processes can share them; history and job metrics go to
Postgres when a database is configured.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis

from artscout.database.database import sessionmanager
from artscout.database.repositories.execution_history_repo import ExecutionHistoryRepo
from artscout.database.repositories.job_metrics_repo import JobMetricsRepo
from artscout.jobs.collaborators import (
    BookmarkScraperFactory,
    CleanupRepository,
    DataValidator,
    OpportunityStore,
    OrganizationScraper,
    SearchResultProcessor,
)
from artscout.jobs.handlers import build_job_handlers
from artscout.jobs.job_processor import JobProcessor
from artscout.jobs.redis_queue_store import RedisQueueStore
from artscout.main.config import Settings, get_settings
from artscout.main.logging import get_logger
from artscout.redis.connection import create_redis_client
from artscout.search.collaborators import (
    OpportunityAnalyzer,
    ProfileRepository,
    QueryGenerator,
    WebSearchClient,
)
from artscout.search.execution_store import RedisExecutionStore
from artscout.search.execution_tracker import ExecutionTracker
from artscout.search.orchestrator import SearchOrchestrator

logger = get_logger(__name__)


@dataclass
class WorkerCollaborators:
    query_generator: QueryGenerator
    analyzer: OpportunityAnalyzer
    search_client: WebSearchClient
    profiles: ProfileRepository
    organization_scraper: OrganizationScraper
    result_processor: SearchResultProcessor
    data_validator: DataValidator
    opportunity_store: OpportunityStore
    bookmark_scraper_factory: BookmarkScraperFactory
    cleanup_repository: CleanupRepository


class Worker:
    """Owns the job processor, the search orchestrator and their connections."""

    def __init__(
        self,
        collaborators: WorkerCollaborators,
        settings: Optional[Settings] = None,
        redis: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_redis = redis is None
        self.redis = redis or create_redis_client(self.settings)

        history = None
        metrics_sink = None
        if sessionmanager.init_from_settings(self.settings):
            history = ExecutionHistoryRepo()
            metrics_sink = JobMetricsRepo()
        else:
            logger.warning("No database configured; history and job metrics are not persisted")

        self.orchestrator = SearchOrchestrator(
            query_generator=collaborators.query_generator,
            analyzer=collaborators.analyzer,
            search_client=collaborators.search_client,
            profiles=collaborators.profiles,
            history=history,
            tracker=ExecutionTracker(
                RedisExecutionStore(self.redis, ttl_seconds=self.settings.execution_ttl_seconds)
            ),
            settings=self.settings,
        )
        handlers = build_job_handlers(
            search_runner=self.orchestrator,
            organization_scraper=collaborators.organization_scraper,
            result_processor=collaborators.result_processor,
            data_validator=collaborators.data_validator,
            opportunity_store=collaborators.opportunity_store,
            bookmark_scraper_factory=collaborators.bookmark_scraper_factory,
            cleanup_repository=collaborators.cleanup_repository,
            settings=self.settings,
        )
        self.processor = JobProcessor(
            handlers,
            RedisQueueStore(
                self.redis,
                key_prefix=self.settings.queue_key_prefix,
                lease_ms=int(self.settings.worker_lease_seconds * 1000),
            ),
            metrics_sink=metrics_sink,
            settings=self.settings,
        )
        self._shutdown_task: Optional[asyncio.Task] = None

    async def startup(self) -> None:
        await self.processor.start()
        logger.info("Worker started", extra={"app_version": self.settings.app_version})

    async def shutdown(self) -> None:
        await self.processor.cleanup()
        await self.orchestrator.aclose()
        if self._owns_redis:
            await self.redis.aclose()
        await sessionmanager.close()
        logger.info("Worker stopped")

    def install_signal_handlers(
        self, stop_event: asyncio.Event, loop: Optional[asyncio.AbstractEventLoop] = None
    ) -> None:
        """Set ``stop_event`` on SIGINT/SIGTERM and begin shutting down straight away."""
        resolved_loop = loop or asyncio.get_running_loop()

        def _on_signal(sig: signal.Signals) -> None:
            logger.info("Received signal, shutting down", extra={"signal": sig.name})
            stop_event.set()
            if self._shutdown_task is None:
                self._shutdown_task = resolved_loop.create_task(self.processor.cleanup())

        for sig in (signal.SIGINT, signal.SIGTERM):
            resolved_loop.add_signal_handler(sig, _on_signal, sig)

    async def run(self) -> None:
        stop_event = asyncio.Event()
        self.install_signal_handlers(stop_event)
        await self.startup()
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()


async def run_worker(
    collaborators: WorkerCollaborators, settings: Optional[Settings] = None
) -> None:
    await Worker(collaborators, settings).run()
