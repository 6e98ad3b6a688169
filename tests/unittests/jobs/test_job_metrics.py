import asyncio

import pytest
from prometheus_client import CollectorRegistry
from tenacity import wait_none

from artscout.jobs.job_models import AttemptOutcome, JobResult, JobType
from artscout.jobs.metrics import JobMetricsRecorder

QUEUE = JobType.SEARCH_EXECUTION.queue_name


class FakeSink:
    def __init__(self, failures: int = 0):
        self.records = []
        self.calls = 0
        self.failures = failures

    async def record_job_metrics(self, record):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("database unavailable")
        self.records.append(record)


@pytest.fixture
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(JobMetricsRecorder._persist.retry, "wait", wait_none())


def make_outcome(success: bool, final: bool = True, attempt: int = 1, duration: int = 120):
    return AttemptOutcome(
        job_id="job-1",
        queue_name=QUEUE,
        job_type=JobType.SEARCH_EXECUTION,
        attempt=attempt,
        max_attempts=3,
        result=JobResult(
            success=success,
            error=None if success else "boom",
            processing_time_ms=duration,
        ),
        retry_delay_ms=None if final else 5_000,
        final=final,
    )


@pytest.mark.asyncio
async def test_outcomes_are_counted_by_status():
    recorder = JobMetricsRecorder(asyncio.Queue(), registry=CollectorRegistry())

    await recorder.record(make_outcome(success=False, final=False))
    await recorder.record(make_outcome(success=False, final=True, attempt=2))
    await recorder.record(make_outcome(success=True))

    assert recorder.count(QUEUE, "retried") == 1
    assert recorder.count(QUEUE, "failed") == 1
    assert recorder.count(QUEUE, "completed") == 1
    assert recorder.observed(QUEUE) == 3


@pytest.mark.asyncio
async def test_sink_receives_one_record_per_attempt():
    sink = FakeSink()
    recorder = JobMetricsRecorder(asyncio.Queue(), sink, registry=CollectorRegistry())

    await recorder.record(make_outcome(success=False, attempt=2, duration=300))

    (record,) = sink.records
    assert record.service_name == "job-processor"
    assert record.operation == "search-execution"
    assert record.attempts == 2
    assert record.success is False
    assert record.response_time_ms == 300
    assert record.error_message == "boom"


@pytest.mark.asyncio
async def test_sink_failures_are_retried(no_retry_wait):
    sink = FakeSink(failures=2)
    recorder = JobMetricsRecorder(asyncio.Queue(), sink, registry=CollectorRegistry())

    await recorder.record(make_outcome(success=True))

    assert sink.calls == 3
    assert len(sink.records) == 1


@pytest.mark.asyncio
async def test_persistent_sink_failure_is_swallowed(no_retry_wait):
    sink = FakeSink(failures=10)
    recorder = JobMetricsRecorder(asyncio.Queue(), sink, registry=CollectorRegistry())

    await recorder.record(make_outcome(success=True))

    assert sink.calls == 3
    assert recorder.count(QUEUE, "completed") == 1


@pytest.mark.asyncio
async def test_stop_drains_pending_outcomes():
    outcomes: asyncio.Queue = asyncio.Queue()
    sink = FakeSink()
    recorder = JobMetricsRecorder(outcomes, sink, registry=CollectorRegistry())
    recorder.start()

    for _ in range(5):
        outcomes.put_nowait(make_outcome(success=True))
    await recorder.stop()

    assert len(sink.records) == 5
    assert outcomes.empty()


@pytest.mark.asyncio
async def test_durations_land_in_second_buckets():
    registry = CollectorRegistry()
    recorder = JobMetricsRecorder(asyncio.Queue(), registry=registry)

    for duration in (50, 100, 450, 2_000, 10_000_000):
        await recorder.record(make_outcome(success=True, duration=duration))

    def bucket(le):
        return registry.get_sample_value(
            "artscout_job_duration_seconds_bucket", {"queue": QUEUE, "le": le}
        )

    assert bucket("0.1") == 2
    assert bucket("0.5") == 3
    assert bucket("5.0") == 4
    assert bucket("+Inf") == 5
    assert registry.get_sample_value(
        "artscout_job_duration_seconds_sum", {"queue": QUEUE}
    ) == pytest.approx((50 + 100 + 450 + 2_000 + 10_000_000) / 1000)


def test_recorders_share_families_per_registry():
    registry = CollectorRegistry()

    first = JobMetricsRecorder(asyncio.Queue(), registry=registry)
    second = JobMetricsRecorder(asyncio.Queue(), registry=registry)

    assert first.families is second.families
