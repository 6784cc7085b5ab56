"""Domain services turning sandbox outcomes into execution results."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from codepage_sandbox.domains.execution.models import (
    ErrorKind,
    ExecutionContext,
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    PerformanceMetrics,
    utcnow,
)

# Checked in order against the exception's MRO; first match wins.
EXCEPTION_KIND_RULES: Sequence[Tuple[str, ErrorKind]] = (
    ("MemoryError", ErrorKind.MEMORY_EXCEEDED),
    ("AssertionError", ErrorKind.ASSERTION_FAILED),
    ("SyntaxError", ErrorKind.SYNTAX_ERROR),
    ("NameError", ErrorKind.REFERENCE_ERROR),
    ("ReferenceError", ErrorKind.REFERENCE_ERROR),
    ("TypeError", ErrorKind.TYPE_ERROR),
    ("AttributeError", ErrorKind.TYPE_ERROR),
)


def classify_exception(type_names: Sequence[str]) -> ErrorKind:
    """Maps an exception's class hierarchy (most derived first) to an ErrorKind."""
    for name in type_names:
        for rule_name, kind in EXCEPTION_KIND_RULES:
            if name == rule_name:
                return kind
    return ErrorKind.SCRIPT_ERROR


def script_error(payload: Dict[str, Any]) -> ExecutionError:
    """Builds the error for an exception reported by the sandbox child."""
    type_names = payload.get("mro") or [payload.get("type", "Exception")]
    return ExecutionError(
        message=payload.get("message") or "Unknown error",
        kind=classify_exception(type_names),
        stack=payload.get("stack"),
        exception_type=payload.get("type"),
        line_number=payload.get("line"),
        column_number=payload.get("column"),
    )


def limit_error(kind: ErrorKind, context: ExecutionContext) -> ExecutionError:
    """Builds the synthetic error for a limit violation or cancellation."""
    config = context.config
    messages = {
        ErrorKind.TIMEOUT_EXCEEDED: f"Execution exceeded timeout of {config.timeout_ms}ms",
        ErrorKind.MEMORY_EXCEEDED: f"Memory limit exceeded ({config.memory_limit_bytes} bytes)",
        ErrorKind.API_CALL_LIMIT_EXCEEDED: f"API call limit exceeded ({config.api_call_limit})",
        ErrorKind.CANCELLED: "Execution cancelled",
    }
    return ExecutionError(message=messages.get(kind, kind.value), kind=kind, exception_type=kind.value)


def infrastructure_error(message: str) -> ExecutionError:
    return ExecutionError(message=message, kind=ErrorKind.INFRASTRUCTURE_ERROR, exception_type="InfrastructureError")


def resolve_status(errors: List[ExecutionError]) -> ExecutionStatus:
    if not errors:
        return ExecutionStatus.PASSED
    if all(e.kind == ErrorKind.ASSERTION_FAILED for e in errors):
        return ExecutionStatus.FAILED
    return ExecutionStatus.ERROR


def compute_performance(context: ExecutionContext, execution_time_ms: float) -> PerformanceMetrics:
    calls = context.api_calls
    avg_response = sum(c.duration_ms for c in calls) / len(calls) if calls else 0.0
    return PerformanceMetrics(
        execution_time_ms=execution_time_ms,
        memory_usage=context.peak_memory,
        api_call_count=len(calls),
        avg_api_response_time_ms=avg_response,
    )


def build_result(
    context: ExecutionContext,
    execution_time_ms: float,
    errors: Optional[List[ExecutionError]] = None,
) -> ExecutionResult:
    """Freezes a run's context into its ExecutionResult."""
    errors = list(errors or [])
    return ExecutionResult(
        id=context.test_id,
        project_id=context.project_id,
        version_id=context.version_id,
        status=resolve_status(errors),
        execution_time_ms=execution_time_ms,
        peak_memory_bytes=context.peak_memory,
        api_call_count=len(context.api_calls),
        errors=errors,
        performance_metrics=compute_performance(context, execution_time_ms),
        logs=list(context.logs),
        api_calls=list(context.api_calls),
        created_at=context.start_time,
        completed_at=utcnow(),
    )


def derived_metrics(result: ExecutionResult) -> List[Tuple[str, float, str]]:
    """Telemetry published for every finished run as (name, value, unit)."""
    return [
        ("codepage_execution_time", float(result.execution_time_ms), "ms"),
        ("codepage_memory_usage", float(result.peak_memory_bytes), "bytes"),
        ("codepage_api_calls", float(result.api_call_count), "count"),
        ("codepage_errors", float(len(result.errors)), "count"),
    ]
