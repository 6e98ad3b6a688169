from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Execution(BaseModel):
    id: str
    profile_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    queries_generated: int = 0
    queries_executed: int = 0
    opportunities_found: int = 0
    high_quality_opportunities: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ExecutionStatus.RUNNING


class ArtistProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    location: Optional[str] = None
    mediums: list[str] = Field(default_factory=list)


class SearchPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SearchOptionsOverride(BaseModel):
    max_results: Optional[int] = Field(default=None, ge=1)
    priority: Optional[SearchPriority] = None


class QueryExecutionOptions(BaseModel):
    max_queries_per_profile: Optional[int] = Field(default=None, ge=1)
    search_options: SearchOptionsOverride = Field(default_factory=SearchOptionsOverride)
    enable_rate_limiting: bool = False
    prioritize_recent: bool = False
    opportunity_types: Optional[list[str]] = None
    locations: Optional[list[str]] = None


class QueryGenerationOptions(BaseModel):
    opportunity_types: list[str]
    max_queries_per_profile: int
    locations: list[str] = Field(default_factory=list)


class QueryGenerationResult(BaseModel):
    queries: list[str] = Field(default_factory=list)
    processing_time_ms: int = 0


class QueryBatch(BaseModel):
    id: str
    profile_id: str
    queries: list[str]
    generated_at: datetime = Field(default_factory=utcnow)


class SearchJobOptions(BaseModel):
    max_results: int
    filter_domains: list[str]
    exclude_domains: list[str]
    priority: SearchPriority = SearchPriority.MEDIUM


class SearchJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SearchHit(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str
    link: str
    snippet: Optional[str] = None
    opportunity_type: Optional[str] = None
    extracted_data: dict[str, Any] = Field(default_factory=dict)


class SearchJobState(BaseModel):
    id: str
    status: SearchJobStatus
    progress: float = 0
    results: Optional[list[SearchHit]] = None
    error: Optional[str] = None


class OpportunityCandidate(BaseModel):
    id: str
    title: str
    url: str
    description: Optional[str] = None
    organization: Optional[str] = None
    deadline: Optional[str] = None
    amount: Optional[str] = None
    location: Optional[str] = None
    requirements: Optional[Any] = None
    type: Optional[str] = None

    @classmethod
    def from_hit(cls, candidate_id: str, hit: SearchHit) -> "OpportunityCandidate":
        extracted = hit.extracted_data
        return cls(
            id=candidate_id,
            title=hit.title,
            url=hit.link,
            description=hit.snippet,
            organization=extracted.get("organization"),
            deadline=extracted.get("deadline"),
            amount=extracted.get("amount"),
            location=extracted.get("location"),
            requirements=extracted.get("requirements"),
            type=hit.opportunity_type,
        )


class OpportunityAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    opportunity_id: Optional[str] = None
    relevance_score: float = Field(ge=0, le=1)


class BatchAnalysisResult(BaseModel):
    analyses: list[OpportunityAnalysis] = Field(default_factory=list)
    average_score: float = 0
    processing_time_ms: int = 0


class ExecutionHistoryRecord(BaseModel):
    execution_id: str
    profile_id: str
    queries: list[str]
    query_count: int
    processing_time_ms: int
    opportunities_found: int
    high_quality_opportunities: int
    status: ExecutionStatus
    created_at: datetime = Field(default_factory=utcnow)
