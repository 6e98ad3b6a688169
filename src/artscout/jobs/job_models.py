import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobType(str, Enum):
    SEARCH_EXECUTION = "search-execution"
    ORGANIZATION_SCRAPING = "organization-scraping"
    RESULT_PROCESSING = "result-processing"
    DATA_VALIDATION = "data-validation"
    BOOKMARK_SCRAPING = "bookmark-scraping"
    CLEANUP = "cleanup"

    @property
    def queue_name(self) -> str:
        # Every job type owns exactly one queue named after it
        return self.value

    @property
    def handler_field(self) -> str:
        return self.value.replace("-", "_")


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 5,
    JobPriority.LOW: 10,
}


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


class JobData(BaseModel):
    """What a caller submits; turned into a Job by the processor."""

    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    user_id: Optional[str] = None
    profile_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    retry_attempts: Optional[int] = Field(default=None, ge=1)


class JobResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    processing_time_ms: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    id: str
    type: JobType
    queue_name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    rank: int = JobPriority.NORMAL.rank
    sequence: int = 0
    attempts: int = 0
    max_attempts: int = 1
    state: JobState = JobState.WAITING
    progress: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_for: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[JobResult] = None
    failed_reason: Optional[str] = None
    user_id: Optional[str] = None
    profile_id: Optional[str] = None


class AttemptOutcome(BaseModel):
    """One message per finished attempt, consumed by the metrics recorder."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    queue_name: str
    job_type: JobType
    attempt: int
    max_attempts: int
    result: JobResult
    retry_delay_ms: Optional[int] = None
    final: bool


class JobStatusView(BaseModel):
    id: str
    type: JobType
    status: JobState
    progress: int
    result: Optional[JobResult] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    attempts: int
    max_attempts: int

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusView":
        terminal = job.state in (JobState.COMPLETED, JobState.FAILED)
        return cls(
            id=job.id,
            type=job.type,
            status=job.state,
            progress=job.progress,
            result=job.result if terminal else None,
            created_at=job.created_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
            failed_reason=job.failed_reason,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
        )


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0


class QueueStats(QueueCounts):
    name: str
    is_paused: bool = False


class JobMetricsRecord(BaseModel):
    service_name: str = "job-processor"
    operation: str
    queue_name: str
    job_id: str
    attempts: int
    success: bool
    response_time_ms: int
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
