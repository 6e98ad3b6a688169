"""Interfaces of the external services the search pipeline coordinates."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from artscout.search.search_models import (
    ArtistProfile,
    BatchAnalysisResult,
    ExecutionHistoryRecord,
    OpportunityCandidate,
    QueryGenerationOptions,
    QueryGenerationResult,
    SearchJobOptions,
    SearchJobState,
)


class QueryGenerator(Protocol):
    async def generate_queries(
        self, profile: ArtistProfile, options: QueryGenerationOptions
    ) -> QueryGenerationResult: ...


class OpportunityAnalyzer(Protocol):
    async def batch_analyze_opportunities(
        self,
        candidates: Sequence[OpportunityCandidate],
        profile: ArtistProfile,
        *,
        max_concurrent: int,
    ) -> BatchAnalysisResult: ...


class WebSearchClient(Protocol):
    async def execute_search(self, queries: Sequence[str], options: SearchJobOptions) -> str:
        """Submit queries and return the search job id."""
        ...

    async def get_job_status(self, search_job_id: str) -> Optional[SearchJobState]: ...

    async def health_check(self) -> bool: ...


class ProfileRepository(Protocol):
    async def get_profile(self, profile_id: str) -> Optional[ArtistProfile]: ...


class ExecutionHistoryRepository(Protocol):
    async def add_record(self, record: ExecutionHistoryRecord) -> None: ...

    async def get_recent(self, profile_id: str, limit: int) -> list[ExecutionHistoryRecord]: ...
