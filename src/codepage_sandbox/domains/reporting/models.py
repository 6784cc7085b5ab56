"""Domain models for aggregated test reports."""

from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict

from codepage_sandbox.domains.execution.models import ExecutionError, ExecutionResult


class DetailLevel(str, Enum):
    BASIC = "basic"
    DETAILED = "detailed"
    COMPREHENSIVE = "comprehensive"


class ReportOptions(BaseModel):
    include_performance_analysis: bool = True
    include_error_analysis: bool = True
    include_recommendations: bool = True
    detail_level: DetailLevel = DetailLevel.DETAILED


class TestSummary(BaseModel):
    __test__ = False  # not a pytest class

    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    error_tests: int = 0
    success_rate: float = 0.0
    average_execution_time_ms: float = 0.0
    total_execution_time_ms: float = 0.0
    average_memory_bytes: float = 0.0
    total_api_calls: int = 0


class Distribution(BaseModel):
    min: float = 0.0
    max: float = 0.0
    average: float = 0.0
    median: float = 0.0
    p95: float = 0.0


class SlowApiCall(BaseModel):
    test_id: str
    method: str
    response_time_ms: float
    timestamp: datetime


class ApiPerformance(BaseModel):
    total_calls: int = 0
    average_response_time_ms: float = 0.0
    slowest_calls: List[SlowApiCall] = Field(default_factory=list)


class PerformanceAnalysis(BaseModel):
    execution_time: Distribution = Field(default_factory=Distribution)
    memory_usage: Distribution = Field(default_factory=Distribution)
    api_performance: ApiPerformance = Field(default_factory=ApiPerformance)
    issues: List[str] = Field(default_factory=list)


class CommonError(BaseModel):
    message: str
    count: int
    affected_tests: List[str] = Field(default_factory=list)


class ErrorTrendPoint(BaseModel):
    hour: datetime
    error_count: int
    total: int
    error_rate: float


class ErrorAnalysis(BaseModel):
    errors_by_kind: Dict[str, int] = Field(default_factory=dict)
    common_errors: List[CommonError] = Field(default_factory=list)
    error_trends: List[ErrorTrendPoint] = Field(default_factory=list)
    critical_errors: List[ExecutionError] = Field(default_factory=list)


class TestReport(BaseModel):
    """Derived aggregate over recent results for one project/version."""
    __test__ = False

    id: str
    project_id: str
    version_id: str
    results: List[ExecutionResult] = Field(default_factory=list)
    summary: TestSummary
    performance_analysis: PerformanceAnalysis
    error_analysis: ErrorAnalysis
    recommendations: List[str] = Field(default_factory=list)
    options: ReportOptions = Field(default_factory=ReportOptions)
    generated_at: datetime

    model_config = ConfigDict(frozen=True)


class ReportingStats(BaseModel):
    total_results: int = 0
    total_reports: int = 0
    oldest_result: Optional[datetime] = None
    newest_result: Optional[datetime] = None
    average_results_per_key: float = 0.0
