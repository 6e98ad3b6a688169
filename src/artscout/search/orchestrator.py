"""Opportunity discovery pipeline for a single artist profile.

``execute_profile_search`` registers a ``running`` execution and returns it
straight away; the pipeline then runs as a background task:

1. look up the profile and generate queries (location and medium variants,
   deduplicated and capped),
2. wait for the shared dispatch gate when rate limiting is requested,
3. submit the queries to the web search service,
4. poll the search job until it completes, fails or times out,
5. score the hits against the profile and count the relevant ones,
6. write a history record (best effort) and mark the execution completed.

Any stage failure marks the execution failed with the stage's error while
keeping the counters gathered so far. Cancellation is cooperative: the
pipeline checks the tracker at every stage boundary, and a cancel wakes the
completion wait immediately.
"""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Set, Union
from uuid import uuid4

from artscout.main.config import Settings, get_settings
from artscout.main.exceptions import (
    ExecutionCancelledError,
    PipelineError,
    ProfileNotFoundError,
    SearchFailedError,
    SearchJobNotFoundError,
    SearchTimeoutError,
)
from artscout.main.job_context import clear_job_context, set_job_context
from artscout.main.logging import get_logger
from artscout.search.collaborators import (
    ExecutionHistoryRepository,
    OpportunityAnalyzer,
    ProfileRepository,
    QueryGenerator,
    WebSearchClient,
)
from artscout.search.dispatch_gate import DispatchGate
from artscout.search.domains import EXCLUDED_DOMAINS, TRUSTED_DOMAINS
from artscout.search.execution_tracker import ExecutionTracker
from artscout.search.query_builder import DEFAULT_OPPORTUNITY_TYPES, expand_queries
from artscout.search.search_models import (
    ArtistProfile,
    Execution,
    ExecutionHistoryRecord,
    ExecutionStatus,
    OpportunityCandidate,
    QueryBatch,
    QueryExecutionOptions,
    QueryGenerationOptions,
    SearchHit,
    SearchJobOptions,
    SearchJobState,
    SearchJobStatus,
    SearchPriority,
    utcnow,
)

logger = get_logger(__name__)

TARGETED_QUERIES_PER_TYPE = 3
TARGETED_MAX_QUERIES = 12
LOCATION_QUERIES_PER_LOCATION = 5

OptionsLike = Union[QueryExecutionOptions, Dict[str, Any], None]


def _coerce_options(options: OptionsLike) -> QueryExecutionOptions:
    if isinstance(options, QueryExecutionOptions):
        return options
    return QueryExecutionOptions.model_validate(options or {})


class SearchOrchestrator:
    def __init__(
        self,
        *,
        query_generator: QueryGenerator,
        analyzer: OpportunityAnalyzer,
        search_client: WebSearchClient,
        profiles: ProfileRepository,
        history: Optional[ExecutionHistoryRepository] = None,
        tracker: Optional[ExecutionTracker] = None,
        dispatch_gate: Optional[DispatchGate] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        self.query_generator = query_generator
        self.analyzer = analyzer
        self.search_client = search_client
        self.profiles = profiles
        self.history = history
        self.tracker = tracker or ExecutionTracker()
        self.dispatch_gate = dispatch_gate or DispatchGate(
            self.settings.search_min_execution_interval_seconds
        )
        self._clock = clock
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    async def execute_profile_search(
        self, profile_id: str, options: OptionsLike = None
    ) -> Execution:
        resolved = _coerce_options(options)
        execution = await self.tracker.create(profile_id)
        cancel_event = asyncio.Event()
        self._cancel_events[execution.id] = cancel_event

        task = asyncio.create_task(
            self._run_pipeline(execution.id, profile_id, resolved, cancel_event),
            name=f"search-{execution.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(
            "Profile search started",
            extra={"execution_id": execution.id, "profile_id": profile_id},
        )
        return execution

    async def execute_targeted_search(
        self,
        profile_id: str,
        opportunity_types: list[str],
        options: OptionsLike = None,
    ) -> Execution:
        resolved = _coerce_options(options)
        max_queries = min(
            len(opportunity_types) * TARGETED_QUERIES_PER_TYPE, TARGETED_MAX_QUERIES
        )
        return await self.execute_profile_search(
            profile_id,
            resolved.model_copy(
                update={
                    "opportunity_types": opportunity_types,
                    "max_queries_per_profile": max_queries or None,
                }
            ),
        )

    async def execute_location_search(
        self, profile_id: str, locations: list[str], options: OptionsLike = None
    ) -> Execution:
        resolved = _coerce_options(options)
        max_queries = len(locations) * LOCATION_QUERIES_PER_LOCATION
        return await self.execute_profile_search(
            profile_id,
            resolved.model_copy(
                update={"locations": locations, "max_queries_per_profile": max_queries or None}
            ),
        )

    async def get_execution_status(self, execution_id: str) -> Optional[Execution]:
        return await self.tracker.get(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        cancelled = await self.tracker.cancel(execution_id)
        if cancelled:
            event = self._cancel_events.get(execution_id)
            if event is not None:
                event.set()
        return cancelled

    async def get_recent_executions(
        self, profile_id: str, limit: int = 10
    ) -> list[ExecutionHistoryRecord]:
        if self.history is None:
            return []
        return await self.history.get_recent(profile_id, limit)

    async def health_check(self) -> bool:
        try:
            return bool(await self.search_client.health_check())
        except Exception as exc:
            logger.warning("Search service health check failed", exc_info=exc)
            return False

    async def cleanup_executions(self, older_than: timedelta) -> int:
        removed = await self.tracker.cleanup(utcnow() - older_than)
        if removed:
            logger.info("Removed finished executions", extra={"removed": removed})
        return removed

    async def aclose(self) -> None:
        """Stop pipelines still in flight; their executions are marked failed."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _ensure_running(self, execution_id: str) -> None:
        if not await self.tracker.is_running(execution_id):
            raise ExecutionCancelledError(execution_id)

    async def _run_pipeline(
        self,
        execution_id: str,
        profile_id: str,
        options: QueryExecutionOptions,
        cancel_event: asyncio.Event,
    ) -> None:
        set_job_context(execution_id=execution_id)
        started = self._clock()
        try:
            profile = await self.profiles.get_profile(profile_id)
            if profile is None:
                raise ProfileNotFoundError(profile_id)
            await self._ensure_running(execution_id)

            batch = await self._generate_queries(profile, options)
            await self.tracker.update_counters(
                execution_id, queries_generated=len(batch.queries)
            )

            if options.enable_rate_limiting:
                await self.dispatch_gate.wait_turn()
                await self._ensure_running(execution_id)

            search_job_id = await self.search_client.execute_search(
                batch.queries, self._search_options(options)
            )
            await self.tracker.update_counters(
                execution_id, queries_executed=len(batch.queries)
            )

            final_state = await self._wait_for_completion(
                execution_id, search_job_id, cancel_event
            )

            hits = final_state.results or []
            if hits:
                high_quality = await self._analyze(hits, profile)
                await self.tracker.update_counters(
                    execution_id,
                    opportunities_found=len(hits),
                    high_quality_opportunities=high_quality,
                )

            await self._ensure_running(execution_id)
            await self._store_history(execution_id, batch, started)
            execution = await self.tracker.complete(execution_id)
            logger.info(
                "Profile search completed",
                extra={
                    "execution_id": execution_id,
                    "opportunities_found": execution.opportunities_found,
                    "high_quality_opportunities": execution.high_quality_opportunities,
                },
            )
        except ExecutionCancelledError:
            logger.info(
                "Profile search stopped after cancellation",
                extra={"execution_id": execution_id},
            )
        except PipelineError as exc:
            logger.warning(
                "Profile search failed",
                extra={"execution_id": execution_id, "error": str(exc)},
            )
            await self.tracker.fail(execution_id, str(exc))
        except asyncio.CancelledError:
            await self.tracker.fail(execution_id, "Search orchestrator shut down")
            raise
        except Exception as exc:
            logger.error(
                "Profile search failed",
                exc_info=exc,
                extra={"execution_id": execution_id},
            )
            await self.tracker.fail(execution_id, str(exc) or type(exc).__name__)
        finally:
            self._cancel_events.pop(execution_id, None)
            clear_job_context()

    async def _generate_queries(
        self, profile: ArtistProfile, options: QueryExecutionOptions
    ) -> QueryBatch:
        max_queries = (
            options.max_queries_per_profile or self.settings.search_max_queries_per_profile
        )
        generated = await self.query_generator.generate_queries(
            profile,
            QueryGenerationOptions(
                opportunity_types=options.opportunity_types or list(DEFAULT_OPPORTUNITY_TYPES),
                max_queries_per_profile=max_queries,
                locations=options.locations or [],
            ),
        )
        queries = expand_queries(generated.queries, profile, options.locations, max_queries)
        logger.debug(
            "Generated search queries",
            extra={"profile_id": profile.id, "query_count": len(queries)},
        )
        return QueryBatch(id=str(uuid4()), profile_id=profile.id, queries=queries)

    def _search_options(self, options: QueryExecutionOptions) -> SearchJobOptions:
        override = options.search_options
        return SearchJobOptions(
            max_results=override.max_results or self.settings.search_max_results,
            filter_domains=list(TRUSTED_DOMAINS),
            exclude_domains=list(EXCLUDED_DOMAINS),
            priority=override.priority or SearchPriority.MEDIUM,
        )

    async def _wait_for_completion(
        self, execution_id: str, search_job_id: str, cancel_event: asyncio.Event
    ) -> SearchJobState:
        timeout = self.settings.search_completion_timeout_seconds
        poll_interval = self.settings.search_poll_interval_seconds
        deadline = self._clock() + timeout

        while True:
            state = await self.search_client.get_job_status(search_job_id)
            if state is None:
                raise SearchJobNotFoundError(search_job_id)
            if state.status == SearchJobStatus.COMPLETED:
                return state
            if state.status == SearchJobStatus.FAILED:
                raise SearchFailedError(state.error)

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise SearchTimeoutError(timeout)

            await self._ensure_running(execution_id)
            try:
                await asyncio.wait_for(
                    cancel_event.wait(), timeout=min(poll_interval, remaining)
                )
            except asyncio.TimeoutError:
                continue
            raise ExecutionCancelledError(execution_id)

    async def _analyze(self, hits: list[SearchHit], profile: ArtistProfile) -> int:
        candidates = [
            OpportunityCandidate.from_hit(f"temp_{uuid4().hex[:9]}", hit) for hit in hits
        ]
        analysis = await self.analyzer.batch_analyze_opportunities(
            candidates,
            profile,
            max_concurrent=self.settings.search_analysis_max_concurrent,
        )
        threshold = self.settings.search_relevance_threshold
        return sum(1 for item in analysis.analyses if item.relevance_score > threshold)

    async def _store_history(
        self, execution_id: str, batch: QueryBatch, started: float
    ) -> None:
        if self.history is None:
            return
        execution = await self.tracker.get(execution_id)
        if execution is None:
            return
        record = ExecutionHistoryRecord(
            execution_id=execution_id,
            profile_id=execution.profile_id,
            queries=batch.queries,
            query_count=len(batch.queries),
            processing_time_ms=int((self._clock() - started) * 1000),
            opportunities_found=execution.opportunities_found,
            high_quality_opportunities=execution.high_quality_opportunities,
            status=ExecutionStatus.COMPLETED,
        )
        try:
            await self.history.add_record(record)
        except Exception as exc:
            logger.error(
                "Failed to store execution history",
                exc_info=exc,
                extra={"execution_id": execution_id},
            )
