"""Domain models for metrics, alert rules and alerts."""

from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum
from uuid import uuid4
from pydantic import BaseModel, Field, ConfigDict

from codepage_sandbox.domains.execution.models import utcnow


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class MetricKind(str, Enum):
    EXECUTION = "execution"
    API_RESPONSE = "api_response"
    SYSTEM_RESOURCE = "system_resource"


class Metric(BaseModel):
    """Single telemetry point. Append-only."""
    id: str = Field(default_factory=lambda: new_id("metric"))
    kind: MetricKind
    name: str = Field(min_length=1, max_length=100)
    value: float
    unit: str = Field(min_length=1, max_length=20)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class MetricFilter(BaseModel):
    kind: Optional[MetricKind] = None
    name: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=1000, ge=1)

    def matches(self, metric: Metric) -> bool:
        if self.kind is not None and metric.kind != self.kind:
            return False
        if self.name is not None and metric.name != self.name:
            return False
        if self.start is not None and metric.timestamp < self.start:
            return False
        if self.end is not None and metric.timestamp > self.end:
            return False
        return True


class MetricsSummary(BaseModel):
    total: int = 0
    average: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    window_start: datetime
    window_end: datetime


class RuleKind(str, Enum):
    THRESHOLD = "threshold"
    ANOMALY = "anomaly"
    ERROR_RATE = "error_rate"


class Condition(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"
    NEQ = "neq"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertRule(BaseModel):
    """Operator-defined condition over a named metric."""
    id: str = Field(default_factory=lambda: new_id("rule"))
    name: str = Field(min_length=1, max_length=100)
    kind: RuleKind
    metric_name: str = Field(min_length=1)
    condition: Condition
    threshold: float
    window_minutes: int = Field(ge=1, le=1440)
    active: bool = True
    channels: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(validate_assignment=True)


class AlertRuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    kind: Optional[RuleKind] = None
    metric_name: Optional[str] = Field(default=None, min_length=1)
    condition: Optional[Condition] = None
    threshold: Optional[float] = None
    window_minutes: Optional[int] = Field(default=None, ge=1, le=1440)
    active: Optional[bool] = None
    channels: Optional[List[str]] = None


class Alert(BaseModel):
    """A firing (or resolved) rule. At most one unresolved alert per rule."""
    id: str = Field(default_factory=lambda: new_id("alert"))
    rule_id: str
    rule_name: str
    severity: Severity
    message: str
    trigger_value: float
    threshold: float
    metadata: Dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class HealthSnapshot(BaseModel):
    status: HealthStatus
    active_alerts: int
    critical_alerts: int
    cpu_usage_percent: float
    memory_usage_mb: float
    response_time_ms: float
    uptime_seconds: float
