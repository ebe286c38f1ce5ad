"""
Data schemas for fetch plans, progress and dataset responses.

Pydantic models providing validation and serialization for everything the
pipeline hands to its callers, plus the shared enums of the error taxonomy.
"""

import math
from enum import Enum
from typing import Any, Optional

import orjson
from pydantic import BaseModel, Field, field_validator, model_validator


class ErrorKind(str, Enum):
    """Failure taxonomy."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    API = "api"
    PARSING = "parsing"
    VALIDATION = "validation"
    CACHE = "cache"
    MEMORY = "memory"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """How a failure is expected to behave on retry."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFIGURATION = "configuration"
    USER_INPUT = "user_input"
    SYSTEM = "system"


class RecoveryStrategy(str, Enum):
    """Recovery strategies in the order they are attempted."""

    RETRY = "retry"
    FALLBACK = "fallback"
    PARTIAL = "partial"
    ABORT = "abort"


class RiskLevel(str, Enum):
    """Fetch plan risk levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProgressPhase(str, Enum):
    """Aggregation phases."""

    FETCHING = "fetching"
    AGGREGATING = "aggregating"
    VALIDATING = "validating"
    COMPLETE = "complete"


class StreamEventType(str, Enum):
    """Incremental stream event kinds."""

    PROGRESS = "progress"
    DATA = "data"
    ERROR = "error"
    COMPLETE = "complete"


class ResultSource(str, Enum):
    """Where a dataset response came from."""

    LIVE = "live"
    CACHE = "cache"
    PARTIAL = "partial"


class FetchPlan(BaseModel):
    """
    Discovery output describing how to fetch a dataset.

    total_pages is always ceil(total_count / page_size).
    """

    total_count: int = Field(..., description="Total records advertised (or estimated)", ge=0)
    total_pages: int = Field(..., description="Pages needed at page_size", ge=0)
    page_size: int = Field(..., description="Records per page", gt=0)
    recommended_concurrency: int = Field(..., description="Concurrent requests", gt=0)
    batch_size: int = Field(..., description="Pages per batch", gt=0)
    estimated_total_time: float = Field(..., description="Estimated fetch time (seconds)", ge=0)
    risk_level: RiskLevel = Field(..., description="Load risk for the upstream")
    reasoning: str = Field("", description="Why this bracket was chosen")
    count_is_estimate: bool = Field(False, description="Count derived from first page length")
    date_from: str = Field(..., description="Start of the date window (YYYY-MM-DD)")
    date_to: str = Field(..., description="End of the date window (YYYY-MM-DD)")
    discovery_time: float = Field(0.0, description="Wall time spent in discovery (seconds)", ge=0)
    api_response_time: float = Field(0.0, description="Latency of the successful probe", ge=0)

    @model_validator(mode="after")
    def validate_page_count(self) -> "FetchPlan":
        """Ensure total_pages matches the count."""
        expected = math.ceil(self.total_count / self.page_size)
        if self.total_pages != expected:
            raise ValueError(
                f"total_pages={self.total_pages} does not match "
                f"ceil({self.total_count}/{self.page_size})={expected}"
            )
        return self

    @property
    def batch_count(self) -> int:
        return math.ceil(self.total_pages / self.batch_size) if self.total_pages else 0


class ProgressSnapshot(BaseModel):
    """Progress of a running fetch."""

    completed: int = Field(0, ge=0)
    total: int = Field(0, ge=0)
    percentage: float = Field(0.0, ge=0, le=100)
    phase: ProgressPhase = ProgressPhase.FETCHING
    estimated_time_remaining: float = Field(0.0, ge=0)


class PerformanceMetrics(BaseModel):
    """Timing and rate figures for one dataset request."""

    total_time: float = Field(0.0, ge=0, description="End-to-end time (seconds)")
    average_request_time: float = Field(0.0, ge=0)
    cache_hit_rate: float = Field(0.0, ge=0, le=1)
    error_rate: float = Field(0.0, ge=0, le=1)
    discovery_time: float = Field(0.0, ge=0)
    aggregation_time: float = Field(0.0, ge=0)


class FetchErrorInfo(BaseModel):
    """User-facing error description; technical detail is kept separate."""

    message: str = Field(..., description="User-facing message")
    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    suggestions: list[str] = Field(default_factory=list)
    technical_message: Optional[str] = None
    page_number: Optional[int] = None
    retry_after: Optional[float] = None
    next_retry_at: Optional[float] = None
    attempt_number: Optional[int] = None
    max_attempts: Optional[int] = None

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        """Ensure message is non-empty."""
        if not v or not v.strip():
            raise ValueError("Error message cannot be empty")
        return v.strip()


class Pagination(BaseModel):
    """Paging figures of an aggregated dataset."""

    total: int = Field(0, ge=0, description="Unique records returned")
    page_size: int = Field(..., gt=0)
    total_pages: int = Field(0, ge=0)
    fetched_pages: int = Field(0, ge=0)
    failed_pages: int = Field(0, ge=0)


class StreamEvent(BaseModel):
    """One incremental event of a streamed dataset fetch."""

    type: StreamEventType
    progress: Optional[ProgressSnapshot] = None
    data: Optional[list[dict[str, Any]]] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    performance: Optional[PerformanceMetrics] = None
    error: Optional[FetchErrorInfo] = None

    def to_sse(self) -> str:
        """
        Serialize as a server-sent event frame.

        Returns:
            str: "data: {...}\\n\\n"
        """
        payload = orjson.dumps(self.model_dump(mode="json", exclude_none=True))
        return f"data: {payload.decode()}\n\n"


class DatasetResponse(BaseModel):
    """
    Aggregated dataset for one date window.

    status is "complete", "partial" (success threshold missed but data
    present) or "error".
    """

    success: bool
    status: str = Field("complete", pattern="^(complete|partial|error)$")
    source: ResultSource = ResultSource.LIVE
    data: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Optional[Pagination] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    progress: Optional[ProgressSnapshot] = None
    warnings: list[str] = Field(default_factory=list)
    errors: list[FetchErrorInfo] = Field(default_factory=list)
    error: Optional[FetchErrorInfo] = None

    @property
    def record_count(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to JSON-compatible dictionary.

        Returns:
            dict: Serialized response with enum values
        """
        return self.model_dump(mode="json")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"DatasetResponse(status={self.status!r}, source={self.source.value}, "
            f"records={self.record_count})"
        )
