import time

import pytest

from codepage_sandbox.domains.execution.models import ExecutionConfig
from codepage_sandbox.infrastructure.enforcement.limits import (
    ApiCallLimitExceeded,
    ResourceLimitExceeded,
    TimeoutExceeded,
)
from codepage_sandbox.infrastructure.enforcement.monitor import ResourceMonitor


def test_api_calls_allowed_up_to_limit():
    """Verify that exactly api_call_limit calls are allowed."""
    monitor = ResourceMonitor(timeout_ms=1000, memory_limit_bytes=1024, api_call_limit=3)

    allowed = [monitor.record_api_call() for _ in range(5)]

    assert allowed == [True, True, True, False, False]
    assert monitor.api_call_count == 3
    assert monitor.violation == "ApiCallLimitExceeded"


def test_zero_api_call_limit_rejects_first_call():
    monitor = ResourceMonitor(timeout_ms=1000, memory_limit_bytes=1024, api_call_limit=0)
    assert monitor.record_api_call() is False
    assert monitor.api_call_count == 0


def test_memory_sample_over_limit_flags_violation():
    monitor = ResourceMonitor(timeout_ms=1000, memory_limit_bytes=1000, api_call_limit=1)

    assert monitor.sample_memory(500) is True
    assert monitor.sample_memory(1001) is False
    assert monitor.violation == "MemoryExceeded"
    assert monitor.peak_memory == 1001


def test_first_violation_wins():
    """Verify that a later limit does not replace the first recorded one."""
    monitor = ResourceMonitor(timeout_ms=1000, memory_limit_bytes=10, api_call_limit=0)

    monitor.record_api_call()
    monitor.sample_memory(100)
    monitor.flag("Cancelled")

    assert monitor.violation == "ApiCallLimitExceeded"


def test_deadline_expiry():
    monitor = ResourceMonitor(timeout_ms=50, memory_limit_bytes=1024, api_call_limit=1)
    assert monitor.is_expired() is False
    assert monitor.remaining() > 0

    time.sleep(0.08)

    assert monitor.is_expired() is True
    assert monitor.remaining() == 0.0
    assert monitor.elapsed() >= 50
    assert monitor.violation == "TimeoutExceeded"


def test_start_from_config():
    config = ExecutionConfig(timeout_ms=1234, memory_limit_bytes=4096, api_call_limit=7)
    monitor = ResourceMonitor.start(config)

    assert monitor.timeout_ms == 1234
    assert monitor.memory_limit_bytes == 4096
    assert monitor.api_call_limit == 7


def test_usage_snapshot():
    monitor = ResourceMonitor(timeout_ms=1000, memory_limit_bytes=1 << 20, api_call_limit=5)
    monitor.record_api_call()
    monitor.sample_memory(2048)

    usage = monitor.usage()

    assert usage["api_call_count"] == 1
    assert usage["memory_usage"] == 2048
    assert usage["execution_time_ms"] >= 0


def test_limit_exceptions_bypass_except_exception():
    """Verify that limit exceptions cannot be swallowed by `except Exception`."""
    with pytest.raises(ResourceLimitExceeded):
        try:
            raise TimeoutExceeded("too slow")
        except Exception:
            pass

    assert not issubclass(ApiCallLimitExceeded, Exception)


def test_api_call_limit_exception_message():
    exc = ApiCallLimitExceeded(3, "query")
    assert str(exc) == "API call limit exceeded (3)"
    assert exc.method == "query"
