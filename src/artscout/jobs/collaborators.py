"""Interfaces of the services job handlers delegate to."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from artscout.jobs.job_models import JobMetricsRecord
from artscout.search.search_models import Execution


class OpportunityData(BaseModel):
    title: str
    url: str
    description: Optional[str] = None
    organization: Optional[str] = None
    deadline: Optional[datetime] = None
    amount: Optional[str] = None
    location: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class OrganizationScrapeResult(BaseModel):
    organization: str
    opportunities: list[OpportunityData] = Field(default_factory=list)


class ProcessedSearchResult(BaseModel):
    url: str
    quality_score: float
    data: dict[str, Any] = Field(default_factory=dict)


class ValidatedItem(BaseModel):
    data: OpportunityData
    score: float = 0.0


class ValidationStatistics(BaseModel):
    total: int = 0
    valid: int = 0
    invalid: int = 0
    duplicates: int = 0
    average_score: float = 0.0


class ValidationReport(BaseModel):
    valid: list[ValidatedItem] = Field(default_factory=list)
    statistics: ValidationStatistics = Field(default_factory=ValidationStatistics)


class PortalScrapeResult(BaseModel):
    portal_id: str
    portal_name: str = "Unknown"
    items_found: int = 0
    items_saved: int = 0
    duplicates_skipped: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class SearchRunner(Protocol):
    async def execute_profile_search(
        self, profile_id: str, options: Optional[dict[str, Any]] = None
    ) -> Execution: ...

    async def get_execution_status(self, execution_id: str) -> Optional[Execution]: ...


class OrganizationScraper(Protocol):
    def has_organization(self, name: str) -> bool: ...

    async def scrape_organization(self, name: str) -> list[OpportunityData]: ...

    async def scrape_all_organizations(self) -> list[OrganizationScrapeResult]: ...

    async def store_opportunities(self, results: Sequence[OrganizationScrapeResult]) -> int: ...


class SearchResultProcessor(Protocol):
    async def process_batch(
        self, search_results: Sequence[dict[str, Any]], options: dict[str, Any]
    ) -> list[ProcessedSearchResult]: ...

    async def store_opportunities(self, results: Sequence[ProcessedSearchResult]) -> int: ...


class DataValidator(Protocol):
    async def validate_batch(self, opportunities: Sequence[dict[str, Any]]) -> ValidationReport: ...


class OpportunityStore(Protocol):
    async def exists_by_url(self, url: str) -> bool: ...

    async def create_opportunity(self, data: OpportunityData, source_type: str) -> None: ...


class BookmarkScraper(Protocol):
    async def scrape_portal(self, portal_id: str) -> PortalScrapeResult: ...

    async def scrape_all_portals(self) -> list[PortalScrapeResult]: ...

    async def aclose(self) -> None: ...


class BookmarkScraperFactory(Protocol):
    def __call__(self) -> BookmarkScraper: ...


class CleanupRepository(Protocol):
    async def delete_job_records_before(self, cutoff: datetime) -> int: ...

    async def delete_failed_opportunities(self) -> int: ...

    async def delete_expired_cache_entries(self, now: datetime) -> int: ...


class JobMetricsSink(Protocol):
    async def record_job_metrics(self, record: JobMetricsRecord) -> None: ...
