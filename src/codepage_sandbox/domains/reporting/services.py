"""Report aggregation over recent execution results."""

import math
import threading
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from loguru import logger

from codepage_sandbox.domains.execution.models import (
    ErrorKind,
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    utcnow,
)
from codepage_sandbox.domains.reporting.models import (
    ApiPerformance,
    CommonError,
    Distribution,
    ErrorAnalysis,
    ErrorTrendPoint,
    PerformanceAnalysis,
    ReportingStats,
    ReportOptions,
    SlowApiCall,
    TestReport,
    TestSummary,
)
from codepage_sandbox.exceptions import NoResultsError
from codepage_sandbox.infrastructure.storage.repository import InMemoryRepository, Repository

MESSAGE_GROUP_LENGTH = 100
TOP_COMMON_ERRORS = 10
TOP_CRITICAL_ERRORS = 5
TOP_SLOW_CALLS = 5
SLOW_CALL_MS = 1000.0

P95_TIME_LIMIT_MS = 10_000
P95_MEMORY_LIMIT_BYTES = 100 * 1024 * 1024
API_LATENCY_LIMIT_MS = 1000

CRITICAL_KINDS = frozenset({ErrorKind.REFERENCE_ERROR, ErrorKind.TYPE_ERROR})

ResultKey = Tuple[str, str]


# -- statistics ---------------------------------------------------------

def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank percentile over already sorted values (0 for no values)."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    index = math.ceil(p / 100 * n) - 1
    return float(sorted_values[max(0, min(index, n - 1))])


def median(sorted_values: Sequence[float]) -> float:
    n = len(sorted_values)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2 == 0:
        return (sorted_values[mid - 1] + sorted_values[mid]) / 2
    return float(sorted_values[mid])


def distribution(values: Sequence[float]) -> Distribution:
    ordered = sorted(values)
    if not ordered:
        return Distribution()
    return Distribution(
        min=ordered[0],
        max=ordered[-1],
        average=sum(ordered) / len(ordered),
        median=median(ordered),
        p95=percentile(ordered, 95),
    )


# -- report sections ----------------------------------------------------

def summarize(results: Sequence[ExecutionResult]) -> TestSummary:
    total = len(results)
    by_status = Counter(r.status for r in results)
    total_time = sum(r.execution_time_ms for r in results)
    total_memory = sum(r.peak_memory_bytes for r in results)
    return TestSummary(
        total_tests=total,
        passed_tests=by_status[ExecutionStatus.PASSED],
        failed_tests=by_status[ExecutionStatus.FAILED],
        error_tests=by_status[ExecutionStatus.ERROR],
        success_rate=by_status[ExecutionStatus.PASSED] / total if total else 0.0,
        average_execution_time_ms=total_time / total if total else 0.0,
        total_execution_time_ms=total_time,
        average_memory_bytes=total_memory / total if total else 0.0,
        total_api_calls=sum(r.api_call_count for r in results),
    )


def slowest_calls(results: Sequence[ExecutionResult]) -> List[SlowApiCall]:
    calls = [
        SlowApiCall(test_id=r.id, method=c.method, response_time_ms=c.duration_ms, timestamp=c.timestamp)
        for r in results
        for c in r.api_calls
        if c.duration_ms > SLOW_CALL_MS
    ]
    calls.sort(key=lambda c: c.response_time_ms, reverse=True)
    return calls[:TOP_SLOW_CALLS]


def analyze_performance(results: Sequence[ExecutionResult]) -> PerformanceAnalysis:
    execution_time = distribution([r.execution_time_ms for r in results])
    memory_usage = distribution([r.peak_memory_bytes for r in results])

    total_calls = sum(r.api_call_count for r in results)
    weighted_latency = sum(
        r.performance_metrics.avg_api_response_time_ms * r.api_call_count for r in results
    )
    average_latency = weighted_latency / total_calls if total_calls else 0.0

    issues = []
    if execution_time.p95 > P95_TIME_LIMIT_MS:
        issues.append("95th percentile execution time exceeds 10 seconds")
    if memory_usage.p95 > P95_MEMORY_LIMIT_BYTES:
        issues.append("95th percentile memory usage exceeds 100MB")
    if average_latency > API_LATENCY_LIMIT_MS:
        issues.append("Average API response time exceeds 1 second")

    return PerformanceAnalysis(
        execution_time=execution_time,
        memory_usage=memory_usage,
        api_performance=ApiPerformance(
            total_calls=total_calls,
            average_response_time_ms=average_latency,
            slowest_calls=slowest_calls(results),
        ),
        issues=issues,
    )


def is_critical(error: ExecutionError) -> bool:
    message = error.message.lower()
    return error.kind in CRITICAL_KINDS or "timeout" in message or "memory" in message


def error_trends(results: Sequence[ExecutionResult]) -> List[ErrorTrendPoint]:
    buckets: Dict[datetime, List[int]] = {}
    for result in results:
        hour = result.created_at.replace(minute=0, second=0, microsecond=0)
        bucket = buckets.setdefault(hour, [0, 0])
        bucket[0] += 1
        if result.has_errors:
            bucket[1] += 1

    return [
        ErrorTrendPoint(hour=hour, total=total, error_count=errors, error_rate=errors / total)
        for hour, (total, errors) in sorted(buckets.items())
    ]


def analyze_errors(results: Sequence[ExecutionResult]) -> ErrorAnalysis:
    by_kind: Counter = Counter()
    by_message: Dict[str, CommonError] = {}
    critical: List[ExecutionError] = []

    for result in results:
        for error in result.errors:
            by_kind[error.kind.value] += 1
            key = error.message[:MESSAGE_GROUP_LENGTH]
            group = by_message.setdefault(key, CommonError(message=key, count=0))
            group.count += 1
            group.affected_tests.append(result.id)
            if is_critical(error):
                critical.append(error)

    # stable sort keeps first-seen order among equal counts
    common = sorted(by_message.values(), key=lambda g: g.count, reverse=True)
    return ErrorAnalysis(
        errors_by_kind=dict(by_kind),
        common_errors=common[:TOP_COMMON_ERRORS],
        error_trends=error_trends(results),
        critical_errors=critical[:TOP_CRITICAL_ERRORS],
    )


def recommend(summary: TestSummary, performance: PerformanceAnalysis, errors: ErrorAnalysis) -> List[str]:
    """Fixed-order rule set; identical inputs give identical output."""
    recommendations = []

    if summary.success_rate < 0.80:
        recommendations.append(
            "Test success rate is below 80%. Review and fix failing tests to improve reliability.")
    elif summary.success_rate < 0.95:
        recommendations.append(
            "Test success rate could be improved. Consider investigating intermittent failures.")

    if performance.execution_time.average > 5000:
        recommendations.append(
            "Average execution time exceeds 5 seconds. Consider optimizing codepage logic or reducing API calls.")
    if performance.memory_usage.p95 > P95_MEMORY_LIMIT_BYTES:
        recommendations.append(
            "95th percentile memory usage exceeds 100MB. Review memory-intensive operations and consider optimization.")
    elif performance.memory_usage.average > 50 * 1024 * 1024:
        recommendations.append(
            "Average memory usage exceeds 50MB. Review memory-intensive operations and consider optimization.")
    if performance.api_performance.average_response_time_ms > 500:
        recommendations.append(
            "API response times are high. Consider caching frequently accessed data or optimizing queries.")

    if errors.critical_errors:
        recommendations.append(
            "Critical errors detected. Prioritize fixing reference errors, type errors and resource limit issues.")
    if errors.common_errors and errors.common_errors[0].count > summary.total_tests * 0.1:
        top = errors.common_errors[0]
        recommendations.append(
            f'Most common error affects {top.count} tests. Focus on resolving: "{top.message}"')

    if summary.total_api_calls > summary.total_tests * 20:
        recommendations.append(
            "High API call volume detected. Consider batching operations or implementing caching.")
    if summary.total_tests < 10:
        recommendations.append(
            "Consider adding more comprehensive test cases to improve coverage and reliability.")

    return recommendations


# -- aggregator ---------------------------------------------------------

class ReportAggregator:
    """Keeps a bounded history of results per (project, version) and builds reports."""

    def __init__(
        self,
        history_size: int = 100,
        result_sample: int = 20,
        reports: Optional[Repository[TestReport]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.history_size = history_size
        self.result_sample = result_sample
        self._reports = reports if reports is not None else InMemoryRepository()
        self._clock = clock
        self._history: Dict[ResultKey, Deque[ExecutionResult]] = {}
        self._key_locks: Dict[ResultKey, threading.Lock] = {}
        self._keys_lock = threading.Lock()

    def _lock_for(self, key: ResultKey) -> threading.Lock:
        with self._keys_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
                self._history[key] = deque(maxlen=self.history_size)
            return lock

    def record(self, result: ExecutionResult) -> Optional[TestReport]:
        """Stores a result. Errored results regenerate the key's report, which is returned."""
        key = (result.project_id, result.version_id)
        with self._lock_for(key):
            self._history[key].append(result)
        logger.debug(f"Test result captured: {result.id} ({result.status.value})")

        if result.has_errors:
            return self.generate(result.project_id, result.version_id)
        return None

    def results(self, project_id: str, version_id: str) -> List[ExecutionResult]:
        key = (project_id, version_id)
        if key not in self._history:
            return []
        with self._lock_for(key):
            return list(self._history[key])

    def generate(
        self,
        project_id: str,
        version_id: str,
        options: Optional[Union[ReportOptions, dict]] = None,
    ) -> TestReport:
        """
        Builds and stores a report over the key's recent results.

        Raises:
            NoResultsError: If nothing was recorded for the key.
        """
        if options is None:
            options = ReportOptions()
        elif not isinstance(options, ReportOptions):
            options = ReportOptions(**options)

        results = self.results(project_id, version_id)
        if not results:
            raise NoResultsError(project_id, version_id)

        summary = summarize(results)
        performance = analyze_performance(results) if options.include_performance_analysis else PerformanceAnalysis()
        errors = analyze_errors(results) if options.include_error_analysis else ErrorAnalysis()
        recommendations = recommend(summary, performance, errors) if options.include_recommendations else []

        sample = results[-self.result_sample:] if self.result_sample else []
        report = TestReport(
            id=f"report-{uuid4().hex[:12]}",
            project_id=project_id,
            version_id=version_id,
            results=sample,
            summary=summary,
            performance_analysis=performance,
            error_analysis=errors,
            recommendations=recommendations,
            options=options,
            generated_at=self._clock(),
        )
        self._reports.put(report.id, report)

        logger.info(
            f"Test report generated: {report.id} for {project_id}/{version_id} "
            f"({summary.total_tests} tests, {summary.success_rate:.1%} success)"
        )
        return report

    def get(self, report_id: str) -> Optional[TestReport]:
        return self._reports.get(report_id)

    def project_reports(self, project_id: str) -> List[TestReport]:
        reports = self._reports.list(lambda r: r.project_id == project_id)
        return sorted(reports, key=lambda r: r.generated_at, reverse=True)

    def delete_old(self, older_than_days: int = 30) -> int:
        """Drops results and reports older than the cutoff. Returns the removed count."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = 0
        with self._keys_lock:
            keys = list(self._history)
        for key in keys:
            with self._lock_for(key):
                history = self._history[key]
                kept = [r for r in history if r.created_at > cutoff]
                removed += len(history) - len(kept)
                self._history[key] = deque(kept, maxlen=self.history_size)
        removed += self._reports.delete_where(lambda r: r.generated_at < cutoff)
        logger.info(f"Cleaned up {removed} old test results and reports")
        return removed

    def stats(self) -> ReportingStats:
        with self._keys_lock:
            keys = list(self._history)
        all_results = [r for key in keys for r in self.results(*key)]
        created = [r.created_at for r in all_results]
        return ReportingStats(
            total_results=len(all_results),
            total_reports=len(self._reports),
            oldest_result=min(created, default=None),
            newest_result=max(created, default=None),
            average_results_per_key=len(all_results) / len(keys) if keys else 0.0,
        )
