"""Handlers for each job type.

A handler receives the job payload and a progress reporter and returns a
summary dict. Exceptions fail the attempt; the worker pool decides whether
it is retried.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from artscout.jobs.collaborators import (
    BookmarkScraperFactory,
    CleanupRepository,
    DataValidator,
    OpportunityStore,
    OrganizationScrapeResult,
    OrganizationScraper,
    PortalScrapeResult,
    SearchResultProcessor,
    SearchRunner,
)
from artscout.jobs.job_models import JobType, utcnow
from artscout.jobs.worker_pool import JobHandler, ProgressReporter
from artscout.main.config import Settings, get_settings
from artscout.main.exceptions import ConfigurationError, JobHandlerError
from artscout.main.logging import get_logger
from artscout.search.search_models import ExecutionStatus

logger = get_logger(__name__)

Payload = dict[str, Any]


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class SearchExecutionHandler:
    def __init__(
        self,
        runner: SearchRunner,
        poll_interval_seconds: float,
        max_polls: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.runner = runner
        self.poll_interval_seconds = poll_interval_seconds
        self.max_polls = max_polls
        self._sleep = sleep

    async def __call__(self, payload: Payload, progress: ProgressReporter) -> Payload:
        profile_id = payload.get("profile_id")
        if not profile_id:
            raise JobHandlerError("search-execution job requires a profile_id")
        options = {**(payload.get("options") or {}), "enable_rate_limiting": True}

        await progress(10)
        execution = await self.runner.execute_profile_search(profile_id, options)
        await progress(50)

        for poll in range(self.max_polls):
            status = await self.runner.get_execution_status(execution.id)
            if status is None:
                logger.warning(
                    "Search execution disappeared while polling",
                    extra={"execution_id": execution.id},
                )
                break
            if status.status == ExecutionStatus.COMPLETED:
                await progress(100)
                return status.model_dump(mode="json")
            if status.status == ExecutionStatus.FAILED:
                raise JobHandlerError(status.error or "Search execution failed")

            await progress(50 + (poll / self.max_polls) * 40)
            await self._sleep(self.poll_interval_seconds)

        raise JobHandlerError("Search execution timeout")


class OrganizationScrapingHandler:
    def __init__(self, scraper: OrganizationScraper):
        self.scraper = scraper

    async def __call__(self, payload: Payload, progress: ProgressReporter) -> Payload:
        organizations: list[str] = payload.get("organizations") or []
        await progress(10)

        results: list[OrganizationScrapeResult] = []
        if organizations:
            for name in organizations:
                if self.scraper.has_organization(name):
                    opportunities = await self.scraper.scrape_organization(name)
                    results.append(
                        OrganizationScrapeResult(organization=name, opportunities=opportunities)
                    )
                else:
                    logger.warning("Unknown organization", extra={"organization": name})
                await progress(10 + (len(results) / len(organizations)) * 70)
        else:
            results = await self.scraper.scrape_all_organizations()
            await progress(80)

        stored = await self.scraper.store_opportunities(results)
        await progress(100)

        return {
            "organizations_scraped": len(results),
            "opportunities_found": sum(len(r.opportunities) for r in results),
            "opportunities_stored": stored,
            "results": [
                {"organization": r.organization, "count": len(r.opportunities)}
                for r in results
            ],
        }


class ResultProcessingHandler:
    QUALITY_THRESHOLD = 50

    def __init__(self, processor: SearchResultProcessor):
        self.processor = processor

    async def __call__(self, payload: Payload, progress: ProgressReporter) -> Payload:
        search_results = payload.get("search_results") or []
        options = {
            **(payload.get("options") or {}),
            "enable_scraping": True,
            "quality_threshold": self.QUALITY_THRESHOLD,
        }

        await progress(10)
        processed = await self.processor.process_batch(search_results, options)
        await progress(80)
        stored = await self.processor.store_opportunities(processed)
        await progress(100)

        return {
            "results_processed": len(processed),
            "opportunities_stored": stored,
            "average_quality_score": _average([r.quality_score for r in processed]),
        }


class DataValidationHandler:
    def __init__(self, validator: DataValidator, opportunities: OpportunityStore):
        self.validator = validator
        self.opportunities = opportunities

    async def __call__(self, payload: Payload, progress: ProgressReporter) -> Payload:
        await progress(10)
        report = await self.validator.validate_batch(payload.get("opportunities") or [])
        await progress(90)

        stored = 0
        for item in report.valid:
            try:
                if await self.opportunities.exists_by_url(item.data.url):
                    continue
                await self.opportunities.create_opportunity(item.data, source_type="validation")
                stored += 1
            except Exception as exc:
                # One bad record must not discard the rest of the batch
                logger.warning(
                    "Failed to store validated opportunity",
                    exc_info=exc,
                    extra={"url": item.data.url},
                )

        await progress(100)
        return {**report.statistics.model_dump(), "opportunities_stored": stored}


class BookmarkScrapingHandler:
    def __init__(self, scraper_factory: BookmarkScraperFactory):
        self.scraper_factory = scraper_factory

    async def __call__(self, payload: Payload, progress: ProgressReporter) -> Payload:
        portal_ids: list[str] = payload.get("portal_ids") or []
        await progress(10)

        scraper = self.scraper_factory()
        results: list[PortalScrapeResult] = []
        try:
            if portal_ids:
                for portal_id in portal_ids:
                    try:
                        results.append(await scraper.scrape_portal(portal_id))
                    except Exception as exc:
                        logger.warning(
                            "Failed to scrape portal",
                            exc_info=exc,
                            extra={"portal_id": portal_id},
                        )
                        results.append(
                            PortalScrapeResult(
                                portal_id=portal_id, errors=[str(exc) or "Unknown error"]
                            )
                        )
                    await progress(10 + (len(results) / len(portal_ids)) * 70)
            else:
                results = await scraper.scrape_all_portals()
                await progress(80)
        finally:
            await scraper.aclose()

        await progress(100)
        return {
            "portals_scraped": len(results),
            "items_found": sum(r.items_found for r in results),
            "items_saved": sum(r.items_saved for r in results),
            "duplicates_skipped": sum(r.duplicates_skipped for r in results),
            "errors_encountered": sum(len(r.errors) for r in results),
            "average_duration_ms": _average([r.duration_ms for r in results]),
            "results": [
                {
                    "portal_id": r.portal_id,
                    "portal_name": r.portal_name,
                    "items_found": r.items_found,
                    "items_saved": r.items_saved,
                    "errors": len(r.errors),
                }
                for r in results
            ],
        }


class CleanupHandler:
    DEFAULT_DAYS_OLD = 7

    def __init__(
        self, repository: CleanupRepository, clock: Callable[[], datetime] = utcnow
    ):
        self.repository = repository
        self._clock = clock

    async def __call__(self, payload: Payload, progress: ProgressReporter) -> Payload:
        cleanup_type = payload.get("cleanup_type", "old-jobs")
        days_old = int(payload.get("days_old", self.DEFAULT_DAYS_OLD))
        await progress(10)

        now = self._clock()
        match cleanup_type:
            case "old-jobs":
                cleaned = await self.repository.delete_job_records_before(
                    now - timedelta(days=days_old)
                )
            case "failed-opportunities":
                cleaned = await self.repository.delete_failed_opportunities()
            case "cache-cleanup":
                cleaned = await self.repository.delete_expired_cache_entries(now)
            case _:
                raise JobHandlerError(f"Unknown cleanup type: {cleanup_type}")

        await progress(100)
        return {"cleanup_type": cleanup_type, "items_cleaned": cleaned}


@dataclass(frozen=True)
class JobHandlers:
    """One handler per job type; a missing handler fails at construction."""

    search_execution: JobHandler
    organization_scraping: JobHandler
    result_processing: JobHandler
    data_validation: JobHandler
    bookmark_scraping: JobHandler
    cleanup: JobHandler

    def __post_init__(self) -> None:
        declared = {f.name for f in fields(self)}
        missing = [t.value for t in JobType if t.handler_field not in declared]
        if missing:
            raise ConfigurationError(f"No handler field for job types: {missing}")
        for name in declared:
            if not callable(getattr(self, name)):
                raise ConfigurationError(f"Handler for {name} is not callable")

    def for_type(self, job_type: JobType) -> JobHandler:
        return getattr(self, job_type.handler_field)


def build_job_handlers(
    *,
    search_runner: SearchRunner,
    organization_scraper: OrganizationScraper,
    result_processor: SearchResultProcessor,
    data_validator: DataValidator,
    opportunity_store: OpportunityStore,
    bookmark_scraper_factory: BookmarkScraperFactory,
    cleanup_repository: CleanupRepository,
    settings: Optional[Settings] = None,
) -> JobHandlers:
    resolved_settings = settings or get_settings()
    return JobHandlers(
        search_execution=SearchExecutionHandler(
            search_runner,
            poll_interval_seconds=resolved_settings.search_job_poll_interval_seconds,
            max_polls=resolved_settings.search_job_max_polls,
        ),
        organization_scraping=OrganizationScrapingHandler(organization_scraper),
        result_processing=ResultProcessingHandler(result_processor),
        data_validation=DataValidationHandler(data_validator, opportunity_store),
        bookmark_scraping=BookmarkScrapingHandler(bookmark_scraper_factory),
        cleanup=CleanupHandler(cleanup_repository),
    )
