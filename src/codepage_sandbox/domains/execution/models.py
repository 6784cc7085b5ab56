"""Domain models for sandboxed script execution."""

from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ExecutionStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Closed classification of everything that can end a run early."""
    SCRIPT_ERROR = "ScriptError"
    REFERENCE_ERROR = "ReferenceError"
    TYPE_ERROR = "TypeError"
    SYNTAX_ERROR = "SyntaxError"
    ASSERTION_FAILED = "AssertionFailed"
    TIMEOUT_EXCEEDED = "TimeoutExceeded"
    MEMORY_EXCEEDED = "MemoryExceeded"
    API_CALL_LIMIT_EXCEEDED = "ApiCallLimitExceeded"
    CANCELLED = "Cancelled"
    INFRASTRUCTURE_ERROR = "InfrastructureError"

    @property
    def is_resource_limit(self) -> bool:
        return self in RESOURCE_LIMIT_KINDS


RESOURCE_LIMIT_KINDS = frozenset({
    ErrorKind.TIMEOUT_EXCEEDED,
    ErrorKind.MEMORY_EXCEEDED,
    ErrorKind.API_CALL_LIMIT_EXCEEDED,
})


class ExecutionConfig(BaseModel):
    """Limits for one run. Immutable once the run starts."""
    timeout_ms: int = Field(default=30000, gt=0)
    memory_limit_bytes: int = Field(default=128 * 1024 * 1024, gt=0)
    api_call_limit: int = Field(default=100, ge=0)
    environment: Environment = Environment.DEVELOPMENT

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_settings(cls, settings: Any, **overrides: Any) -> "ExecutionConfig":
        """Merges caller overrides (None values ignored) over platform defaults."""
        values = {
            "timeout_ms": settings.timeout_ms,
            "memory_limit_bytes": settings.memory_limit_bytes,
            "api_call_limit": settings.api_call_limit,
            "environment": settings.environment,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ApiCallRecord(BaseModel):
    """One completed call against the mock external API."""
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)
    response: Any = None
    timestamp: datetime
    duration_ms: float

    model_config = ConfigDict(frozen=True)


class ExecutionError(BaseModel):
    message: str
    kind: ErrorKind
    stack: Optional[str] = None
    exception_type: Optional[str] = None
    line_number: Optional[int] = None
    column_number: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class PerformanceMetrics(BaseModel):
    execution_time_ms: float = 0.0
    memory_usage: int = 0
    api_call_count: int = 0
    avg_api_response_time_ms: float = 0.0

    model_config = ConfigDict(frozen=True)


class ExecutionContext(BaseModel):
    """Mutable per-run state, owned by the engine for the lifetime of one run."""
    test_id: str
    project_id: str
    version_id: str
    config: ExecutionConfig
    start_time: datetime = Field(default_factory=utcnow)
    api_calls: List[ApiCallRecord] = Field(default_factory=list)
    logs: List[str] = Field(default_factory=list)
    memory_samples: List[int] = Field(default_factory=list)

    def add_memory_sample(self, rss_bytes: int) -> None:
        self.memory_samples.append(rss_bytes)

    @property
    def peak_memory(self) -> int:
        return max(self.memory_samples, default=0)


class ExecutionResult(BaseModel):
    """Terminal record of one run. Produced exactly once, never mutated."""
    id: str
    project_id: str
    version_id: str
    status: ExecutionStatus
    execution_time_ms: float
    peak_memory_bytes: int
    api_call_count: int
    errors: List[ExecutionError] = Field(default_factory=list)
    performance_metrics: PerformanceMetrics
    logs: List[str] = Field(default_factory=list)
    api_calls: List[ApiCallRecord] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime

    model_config = ConfigDict(frozen=True)

    @property
    def has_errors(self) -> bool:
        return self.status == ExecutionStatus.ERROR or bool(self.errors)


class ExecutionJob(BaseModel):
    """One script run queued through execute_many."""
    script_source: str
    test_data: Any = None
    config: Optional[Union[ExecutionConfig, Dict[str, Any]]] = None
    project_id: str = "adhoc"
    version_id: str = "current"
