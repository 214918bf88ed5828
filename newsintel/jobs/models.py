"""Job types, payload schemas and the job record kept by the queue."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field

from newsintel.core.time import utc_now


class JobType(str, Enum):
    EMBEDDING = "embedding"
    CATEGORIZATION = "categorization"
    ANALYSIS = "analysis"
    RECOMMENDATION = "recommendation"
    TRENDING = "trending"
    DUPLICATE = "duplicate"
    BATCH = "batch"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    # attempt failed, retry scheduled after backoff
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


TERMINAL_STATES = (JobState.COMPLETED, JobState.DEAD_LETTER)


class EmbeddingPayload(BaseModel):
    content_id: str = Field(..., min_length=1)
    content_type: Literal["article", "paper", "user_preference"] = "article"
    title: Optional[str] = None
    content: str = ""
    user_id: Optional[str] = Field(default=None, description="Required for user_preference embeddings")


class CategorizationPayload(BaseModel):
    content_id: str = Field(..., min_length=1)
    content_type: Literal["article", "paper"] = "article"
    title: str = ""
    content: str = Field(..., min_length=1)
    existing_category: Optional[str] = None
    method: Literal["ai", "keyword", "embedding", "hybrid", "auto"] = "auto"
    use_cache: bool = True


class AnalysisPayload(BaseModel):
    content_id: str = Field(..., min_length=1)
    content_type: Literal["article", "paper"] = "article"
    title: str = ""
    content: str = Field(..., min_length=1)
    include_summary: bool = True
    include_sentiment: bool = True
    include_quality: bool = True
    depth: Literal["basic", "standard", "comprehensive"] = "standard"


class RecommendationPayload(BaseModel):
    user_id: str = Field(..., min_length=1)
    limit: int = Field(default=20, ge=1, le=100)
    exclude_read: bool = False
    categories: List[str] = Field(default_factory=list)
    content_types: List[str] = Field(default_factory=list)
    max_age_days: Optional[float] = Field(default=None, gt=0)
    diversity_factor: Optional[float] = Field(default=None, ge=0, le=1)
    min_quality: Optional[float] = Field(default=None, ge=0, le=100)
    refresh_cache: bool = False


class TrendingPayload(BaseModel):
    time_windows: List[str] = Field(default_factory=lambda: ["short", "medium", "long"])
    min_mentions: Optional[int] = Field(default=None, ge=1)
    max_topics: Optional[int] = Field(default=None, ge=1, le=100)
    categories: List[str] = Field(default_factory=list)
    refresh_cache: bool = False


class DuplicatePayload(BaseModel):
    content_id: str = Field(..., min_length=1)
    content_type: Literal["article", "paper"] = "article"
    title: str = ""
    content: str = Field(..., min_length=1)


class BatchItem(BaseModel):
    content_id: str = Field(..., min_length=1)
    content_type: Literal["article", "paper"] = "article"
    title: str = ""
    content: str = ""


class BatchPayload(BaseModel):
    operation: Literal["embedding", "categorization", "analysis", "duplicate_detection"]
    items: List[BatchItem] = Field(..., min_length=1)
    batch_size: Optional[int] = Field(default=None, ge=1, description="Sub-batch size, defaults to queue config")
    options: Dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.EMBEDDING: EmbeddingPayload,
    JobType.CATEGORIZATION: CategorizationPayload,
    JobType.ANALYSIS: AnalysisPayload,
    JobType.RECOMMENDATION: RecommendationPayload,
    JobType.TRENDING: TrendingPayload,
    JobType.DUPLICATE: DuplicatePayload,
    JobType.BATCH: BatchPayload,
}


@dataclass
class JobResult:
    """Envelope recorded for every finished attempt."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    processing_time: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "processing_time": self.processing_time,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Job:
    id: str
    type: JobType
    payload: Any
    priority: int = 0
    max_attempts: int = 1
    state: JobState = JobState.WAITING
    attempts: int = 0
    progress: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[JobResult] = None
    errors: List[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def update_progress(self, progress: float) -> None:
        self.progress = int(max(0, min(100, progress)))

    def to_dict(self) -> Dict[str, Any]:
        payload = self.payload.model_dump() if isinstance(self.payload, BaseModel) else self.payload
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": payload,
            "priority": self.priority,
            "state": self.state.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result.to_dict() if self.result else None,
            "errors": list(self.errors),
        }

    @classmethod
    def from_dict(cls, record: Dict[str, Any]) -> "Job":
        """Rebuild a job from its stored record; the payload stays raw until processed."""
        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        result = record.get("result")
        return cls(
            id=record["id"],
            type=JobType(record["type"]),
            payload=record.get("payload") or {},
            priority=record.get("priority", 0),
            max_attempts=record.get("max_attempts", 1),
            state=JobState(record.get("state", JobState.WAITING.value)),
            attempts=record.get("attempts", 0),
            progress=record.get("progress", 0),
            created_at=parse(record.get("created_at")) or utc_now(),
            started_at=parse(record.get("started_at")),
            finished_at=parse(record.get("finished_at")),
            result=JobResult(
                success=result["success"],
                data=result.get("data"),
                error=result.get("error"),
                processing_time=result.get("processing_time", 0.0),
                timestamp=parse(result.get("timestamp")) or utc_now(),
            ) if result else None,
            errors=list(record.get("errors") or []),
        )
