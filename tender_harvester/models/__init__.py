"""
Models Module

Pydantic models and enums shared across the pipeline.

Components:
    - FetchPlan: Discovery output
    - DatasetResponse: Aggregated dataset returned to callers
    - StreamEvent: Incremental progress/data/error/complete event
    - ErrorKind, ErrorSeverity, ErrorCategory, RecoveryStrategy: Error taxonomy
"""

from .schemas import (
    DatasetResponse,
    ErrorCategory,
    ErrorKind,
    ErrorSeverity,
    FetchErrorInfo,
    FetchPlan,
    Pagination,
    PerformanceMetrics,
    ProgressPhase,
    ProgressSnapshot,
    RecoveryStrategy,
    ResultSource,
    RiskLevel,
    StreamEvent,
    StreamEventType,
)

__all__ = [
    "DatasetResponse",
    "ErrorCategory",
    "ErrorKind",
    "ErrorSeverity",
    "FetchErrorInfo",
    "FetchPlan",
    "Pagination",
    "PerformanceMetrics",
    "ProgressPhase",
    "ProgressSnapshot",
    "RecoveryStrategy",
    "ResultSource",
    "RiskLevel",
    "StreamEvent",
    "StreamEventType",
]
