"""Unit tests for the opportunity discovery pipeline."""

import asyncio
from datetime import timedelta

import pytest

from artscout.search.domains import EXCLUDED_DOMAINS, TRUSTED_DOMAINS
from artscout.search.execution_tracker import CANCELLED_BY_USER
from artscout.search.orchestrator import SearchOrchestrator
from artscout.search.search_models import (
    ArtistProfile,
    BatchAnalysisResult,
    ExecutionStatus,
    OpportunityAnalysis,
    QueryGenerationResult,
    SearchHit,
    SearchJobState,
    SearchJobStatus,
)


class FakeQueryGenerator:
    def __init__(self, queries_by_profile):
        self.queries_by_profile = queries_by_profile
        self.options = []

    async def generate_queries(self, profile, options):
        self.options.append(options)
        return QueryGenerationResult(queries=self.queries_by_profile[profile.id])


class FakeSearchClient:
    """Each submitted search gets its own scripted sequence of states."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.submitted = []
        self.jobs = {}
        self.healthy = True

    async def execute_search(self, queries, options):
        job_id = f"search-{len(self.submitted) + 1}"
        self.submitted.append((list(queries), options))
        self.jobs[job_id] = list(self.scripts.pop(0))
        return job_id

    async def get_job_status(self, search_job_id):
        states = self.jobs[search_job_id]
        state = states.pop(0) if len(states) > 1 else states[0]
        if state is None:
            return None
        return state.model_copy(update={"id": search_job_id})

    async def health_check(self):
        if isinstance(self.healthy, Exception):
            raise self.healthy
        return self.healthy


class FakeAnalyzer:
    def __init__(self, scores=None, error=None):
        self.scores = scores or []
        self.error = error
        self.calls = []

    async def batch_analyze_opportunities(self, candidates, profile, *, max_concurrent):
        self.calls.append((candidates, max_concurrent))
        if self.error is not None:
            raise self.error
        return BatchAnalysisResult(
            analyses=[
                OpportunityAnalysis(opportunity_id=c.id, relevance_score=s)
                for c, s in zip(candidates, self.scores)
            ]
        )


class FakeProfiles:
    def __init__(self, *profiles):
        self.profiles = {p.id: p for p in profiles}

    async def get_profile(self, profile_id):
        return self.profiles.get(profile_id)


class FakeHistory:
    def __init__(self, error=None):
        self.records = []
        self.error = error

    async def add_record(self, record):
        if self.error is not None:
            raise self.error
        self.records.append(record)

    async def get_recent(self, profile_id, limit):
        return [r for r in self.records if r.profile_id == profile_id][:limit]


class FakeGate:
    def __init__(self):
        self.turns = 0

    async def wait_turn(self):
        self.turns += 1
        return 0.0


def hit(n):
    return SearchHit(
        title=f"Opportunity {n}",
        link=f"https://example.org/{n}",
        snippet="Open call for artists",
        extracted_data={"organization": "Arts Council", "deadline": "2025-01-31"},
    )


def completed(*hits):
    return SearchJobState(id="", status=SearchJobStatus.COMPLETED, progress=100, results=list(hits))


RUNNING = SearchJobState(id="", status=SearchJobStatus.RUNNING, progress=40)

PROFILE = ArtistProfile(id="p1", name="Ada")


def make_orchestrator(settings, *, scripts, scores=(), queries=None, profiles=None, **kwargs):
    queries = queries or {"p1": ["q1", "q2"]}
    generator = FakeQueryGenerator(queries)
    client = FakeSearchClient(scripts)
    analyzer = kwargs.pop("analyzer", None) or FakeAnalyzer(list(scores))
    orchestrator = SearchOrchestrator(
        query_generator=generator,
        analyzer=analyzer,
        search_client=client,
        profiles=profiles or FakeProfiles(PROFILE),
        settings=settings,
        **kwargs,
    )
    return orchestrator, generator, client, analyzer


async def wait_until_finished(orchestrator, execution_id, timeout=2.0):
    async def _poll():
        while True:
            execution = await orchestrator.get_execution_status(execution_id)
            if execution.is_terminal:
                return execution
            await asyncio.sleep(0.005)

    return await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_profile_search_completes_with_counters(test_settings):
    history = FakeHistory()
    orchestrator, _, client, analyzer = make_orchestrator(
        test_settings,
        scripts=[[RUNNING, completed(hit(1), hit(2), hit(3))]],
        scores=[0.8, 0.8, 0.8],
        history=history,
    )

    started = await orchestrator.execute_profile_search("p1")
    assert started.status == ExecutionStatus.RUNNING
    execution = await wait_until_finished(orchestrator, started.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.queries_generated == 2
    assert execution.queries_executed == 2
    assert execution.opportunities_found == 3
    assert execution.high_quality_opportunities == 3
    assert execution.completed_at is not None
    assert execution.error is None

    (record,) = history.records
    assert record.query_count == 2
    assert record.queries == ["q1", "q2"]
    assert record.status == ExecutionStatus.COMPLETED
    assert record.high_quality_opportunities == 3

    candidates, max_concurrent = analyzer.calls[0]
    assert max_concurrent == test_settings.search_analysis_max_concurrent
    assert candidates[0].url == "https://example.org/1"
    assert candidates[0].organization == "Arts Council"


@pytest.mark.asyncio
async def test_only_scores_above_threshold_count_as_high_quality(test_settings):
    orchestrator, *_ = make_orchestrator(
        test_settings,
        scripts=[[completed(hit(1), hit(2), hit(3))]],
        scores=[0.6, 0.61, 0.2],
    )

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.opportunities_found == 3
    assert execution.high_quality_opportunities == 1


@pytest.mark.asyncio
async def test_search_submission_uses_domain_lists_and_defaults(test_settings):
    orchestrator, _, client, _ = make_orchestrator(test_settings, scripts=[[completed()]])

    execution = await orchestrator.execute_profile_search(
        "p1", {"search_options": {"max_results": 5, "priority": "high"}}
    )
    await wait_until_finished(orchestrator, execution.id)

    queries, options = client.submitted[0]
    assert queries == ["q1", "q2"]
    assert options.max_results == 5
    assert options.priority.value == "high"
    assert options.filter_domains == list(TRUSTED_DOMAINS)
    assert options.exclude_domains == list(EXCLUDED_DOMAINS)


@pytest.mark.asyncio
async def test_no_hits_completes_without_analysis(test_settings):
    orchestrator, _, _, analyzer = make_orchestrator(test_settings, scripts=[[completed()]])

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.opportunities_found == 0
    assert analyzer.calls == []


@pytest.mark.asyncio
async def test_remote_search_failure_fails_execution(test_settings):
    failed = SearchJobState(id="", status=SearchJobStatus.FAILED, error="provider down")
    orchestrator, *_ = make_orchestrator(test_settings, scripts=[[RUNNING, failed]])

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Search failed: provider down"
    assert execution.queries_generated == 2
    assert execution.completed_at is not None


@pytest.mark.asyncio
async def test_missing_search_job_fails_execution(test_settings):
    orchestrator, *_ = make_orchestrator(test_settings, scripts=[[None]])

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.error == "Search job not found"


@pytest.mark.asyncio
async def test_search_that_never_finishes_times_out(test_settings):
    settings = test_settings.model_copy(update={"search_completion_timeout_seconds": 0.05})
    orchestrator, *_ = make_orchestrator(settings, scripts=[[RUNNING]])

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Search timeout"
    assert execution.queries_executed == 2


@pytest.mark.asyncio
async def test_unknown_profile_fails_execution(test_settings):
    orchestrator, generator, client, _ = make_orchestrator(test_settings, scripts=[])

    execution = await orchestrator.execute_profile_search("nobody")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "Profile not found"
    assert execution.queries_generated == 0
    assert generator.options == []
    assert client.submitted == []


@pytest.mark.asyncio
async def test_analyzer_error_fails_execution_but_keeps_counters(test_settings):
    orchestrator, *_ = make_orchestrator(
        test_settings,
        scripts=[[completed(hit(1))]],
        analyzer=FakeAnalyzer(error=RuntimeError("model overloaded")),
    )

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "model overloaded"
    assert execution.queries_executed == 2


@pytest.mark.asyncio
async def test_history_failure_does_not_fail_execution(test_settings):
    orchestrator, *_ = make_orchestrator(
        test_settings,
        scripts=[[completed(hit(1))]],
        scores=[0.9],
        history=FakeHistory(error=ConnectionError("database unavailable")),
    )

    execution = await orchestrator.execute_profile_search("p1")
    execution = await wait_until_finished(orchestrator, execution.id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.high_quality_opportunities == 1


@pytest.mark.asyncio
async def test_concurrent_executions_are_independent(test_settings):
    failed = SearchJobState(id="", status=SearchJobStatus.FAILED, error="quota exceeded")
    orchestrator, *_ = make_orchestrator(
        test_settings,
        scripts=[[RUNNING, completed(hit(1), hit(2))], [RUNNING, failed]],
        scores=[0.9, 0.1],
        queries={"p1": ["q1", "q2"], "p2": ["other"]},
        profiles=FakeProfiles(PROFILE, ArtistProfile(id="p2", name="Grace")),
    )

    first, second = await asyncio.gather(
        orchestrator.execute_profile_search("p1"),
        orchestrator.execute_profile_search("p2"),
    )
    assert first.id != second.id
    first = await wait_until_finished(orchestrator, first.id)
    second = await wait_until_finished(orchestrator, second.id)

    assert first.status == ExecutionStatus.COMPLETED
    assert (first.queries_generated, first.opportunities_found) == (2, 2)
    assert second.status == ExecutionStatus.FAILED
    assert second.error == "Search failed: quota exceeded"
    assert second.queries_generated == 1
    assert second.opportunities_found == 0


@pytest.mark.asyncio
async def test_cancel_stops_pipeline_promptly(test_settings):
    settings = test_settings.model_copy(
        update={"search_poll_interval_seconds": 30, "search_completion_timeout_seconds": 60}
    )
    orchestrator, _, client, analyzer = make_orchestrator(
        settings, scripts=[[RUNNING, completed(hit(1))]], scores=[0.9]
    )

    execution = await orchestrator.execute_profile_search("p1")
    while not client.submitted:
        await asyncio.sleep(0.005)
    await asyncio.sleep(0.01)

    assert await orchestrator.cancel_execution(execution.id) is True
    cancelled = await wait_until_finished(orchestrator, execution.id)
    await asyncio.wait_for(asyncio.gather(*orchestrator._tasks), timeout=1)

    assert cancelled.status == ExecutionStatus.FAILED
    assert cancelled.error == CANCELLED_BY_USER
    assert cancelled.queries_generated == 2
    assert analyzer.calls == []
    assert (await orchestrator.get_execution_status(execution.id)).error == CANCELLED_BY_USER
    assert await orchestrator.cancel_execution(execution.id) is False


@pytest.mark.asyncio
async def test_rate_limited_search_waits_for_dispatch_gate(test_settings):
    gate = FakeGate()
    orchestrator, *_ = make_orchestrator(
        test_settings, scripts=[[completed()], [completed()]], dispatch_gate=gate
    )

    plain = await orchestrator.execute_profile_search("p1")
    await wait_until_finished(orchestrator, plain.id)
    assert gate.turns == 0

    limited = await orchestrator.execute_profile_search("p1", {"enable_rate_limiting": True})
    await wait_until_finished(orchestrator, limited.id)
    assert gate.turns == 1


@pytest.mark.asyncio
async def test_targeted_search_limits_queries_per_type(test_settings):
    orchestrator, generator, *_ = make_orchestrator(test_settings, scripts=[[completed()]])

    execution = await orchestrator.execute_targeted_search("p1", ["grants", "residencies"])
    await wait_until_finished(orchestrator, execution.id)

    options = generator.options[0]
    assert options.opportunity_types == ["grants", "residencies"]
    assert options.max_queries_per_profile == 6


@pytest.mark.asyncio
async def test_targeted_search_is_capped_at_twelve(test_settings):
    orchestrator, generator, *_ = make_orchestrator(test_settings, scripts=[[completed()]])

    execution = await orchestrator.execute_targeted_search("p1", ["a", "b", "c", "d", "e"])
    await wait_until_finished(orchestrator, execution.id)

    assert generator.options[0].max_queries_per_profile == 12


@pytest.mark.asyncio
async def test_location_search_expands_each_location(test_settings):
    orchestrator, generator, client, _ = make_orchestrator(
        test_settings, scripts=[[completed()]], queries={"p1": ["grants"]}
    )

    execution = await orchestrator.execute_location_search("p1", ["Oslo", "Lisbon"])
    await wait_until_finished(orchestrator, execution.id)

    assert generator.options[0].max_queries_per_profile == 10
    assert generator.options[0].locations == ["Oslo", "Lisbon"]
    assert client.submitted[0][0] == ["grants", "grants Oslo", "grants Lisbon"]


@pytest.mark.asyncio
async def test_default_query_limit_comes_from_settings(test_settings):
    orchestrator, generator, *_ = make_orchestrator(test_settings, scripts=[[completed()]])

    execution = await orchestrator.execute_profile_search("p1")
    await wait_until_finished(orchestrator, execution.id)

    assert (
        generator.options[0].max_queries_per_profile
        == test_settings.search_max_queries_per_profile
    )


@pytest.mark.asyncio
async def test_recent_executions_come_from_history(test_settings):
    history = FakeHistory()
    orchestrator, *_ = make_orchestrator(
        test_settings, scripts=[[completed()], [completed()]], history=history
    )
    for _ in range(2):
        execution = await orchestrator.execute_profile_search("p1")
        await wait_until_finished(orchestrator, execution.id)

    assert len(await orchestrator.get_recent_executions("p1", limit=1)) == 1
    assert len(await orchestrator.get_recent_executions("p1")) == 2


@pytest.mark.asyncio
async def test_recent_executions_without_history_is_empty(test_settings):
    orchestrator, *_ = make_orchestrator(test_settings, scripts=[])

    assert await orchestrator.get_recent_executions("p1") == []


@pytest.mark.asyncio
async def test_health_check_reports_false_on_error(test_settings):
    orchestrator, _, client, _ = make_orchestrator(test_settings, scripts=[])

    assert await orchestrator.health_check() is True
    client.healthy = ConnectionError("unreachable")
    assert await orchestrator.health_check() is False


@pytest.mark.asyncio
async def test_aclose_fails_running_pipelines(test_settings):
    settings = test_settings.model_copy(update={"search_completion_timeout_seconds": 60})
    orchestrator, _, client, _ = make_orchestrator(settings, scripts=[[RUNNING]])

    execution = await orchestrator.execute_profile_search("p1")
    while not client.submitted:
        await asyncio.sleep(0.005)
    await orchestrator.aclose()

    stopped = await orchestrator.get_execution_status(execution.id)
    assert stopped.status == ExecutionStatus.FAILED
    assert stopped.error == "Search orchestrator shut down"


@pytest.mark.asyncio
async def test_cleanup_keeps_recent_executions(test_settings):
    orchestrator, *_ = make_orchestrator(test_settings, scripts=[[completed()]])
    execution = await orchestrator.execute_profile_search("p1")
    await wait_until_finished(orchestrator, execution.id)

    assert await orchestrator.cleanup_executions(timedelta(hours=1)) == 0
    assert await orchestrator.get_execution_status(execution.id) is not None
