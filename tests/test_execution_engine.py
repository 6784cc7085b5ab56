"""
End-to-end tests of the execution engine.

Every test here spawns a real sandbox process.
"""

import threading
import time

import pytest

from codepage_sandbox.domains.execution.models import ErrorKind, ExecutionStatus
from codepage_sandbox.domains.monitoring.models import MetricFilter, MetricKind
from codepage_sandbox.infrastructure.sandbox.engine import ExecutionEngine


@pytest.fixture
def engine(settings):
    return ExecutionEngine(settings)


class RecordingReporter:
    def __init__(self, fail=False):
        self.results = []
        self.fail = fail

    def record(self, result):
        if self.fail:
            raise RuntimeError("reporting store down")
        self.results.append(result)


# =============================================================================
# OUTCOMES
# =============================================================================

class TestOutcomes:

    def test_passing_script(self, engine):
        result = engine.execute("console.log('hi')\nassert 1 + 1 == 2")

        assert result.status == ExecutionStatus.PASSED
        assert result.errors == []
        assert len(result.logs) == 1
        assert result.logs[0].endswith("] hi")
        assert result.peak_memory_bytes > 0
        assert result.project_id == "adhoc"

    def test_test_data_reaches_script(self, engine):
        result = engine.execute("console.log(testData['quantity'] * 2)", test_data={"quantity": 21})
        assert result.logs[0].endswith("] 42")

    def test_failed_assertion_gives_failed_status(self, engine):
        result = engine.execute("assert False, 'price mismatch'")

        assert result.status == ExecutionStatus.FAILED
        assert result.errors[0].kind == ErrorKind.ASSERTION_FAILED
        assert result.errors[0].message == "price mismatch"

    def test_script_error_carries_position(self, engine):
        result = engine.execute("total = 0\nconsole.log('before')\ntotal = total + missing")

        assert result.status == ExecutionStatus.ERROR
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.kind == ErrorKind.REFERENCE_ERROR
        assert error.line_number == 3
        assert result.logs[0].endswith("] before")

    def test_syntax_error(self, engine):
        result = engine.execute("def broken(:\n    pass")
        assert result.errors[0].kind == ErrorKind.SYNTAX_ERROR
        assert result.errors[0].line_number == 1

    def test_script_cannot_reach_host_files_or_shell(self, engine, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("host-secret")
        marker = tmp_path / "pwned"

        read = engine.execute(f"console.log(json.codecs.open({str(secret)!r}).read())")
        shell = engine.execute(f"json.codecs.sys.modules['os'].system('touch {marker}')")

        assert read.status == ExecutionStatus.ERROR
        assert not any("host-secret" in line for line in read.logs)
        assert shell.status == ExecutionStatus.ERROR
        assert not marker.exists()

    def test_invalid_config_is_reported_not_raised(self, engine):
        result = engine.execute("console.log('x')", config={"timeout_ms": -1})

        assert result.status == ExecutionStatus.ERROR
        assert result.errors[0].kind == ErrorKind.INFRASTRUCTURE_ERROR
        assert result.errors[0].message.startswith("Invalid execution config")
        assert result.logs == []


# =============================================================================
# RESOURCE LIMITS
# =============================================================================

class TestResourceLimits:

    def test_infinite_loop_times_out(self, engine):
        """Verify that a runaway script is stopped with exactly one TimeoutExceeded."""
        result = engine.execute("while True:\n    pass", config={"timeout_ms": 500})

        assert result.status == ExecutionStatus.ERROR
        assert [e.kind for e in result.errors] == [ErrorKind.TIMEOUT_EXCEEDED]
        assert result.errors[0].message == "Execution exceeded timeout of 500ms"
        assert 500 <= result.execution_time_ms < 500 + 1000

    def test_api_call_limit(self, engine):
        """Verify that N+1 calls against a ceiling of N record N calls and one limit error."""
        script = "for i in range(5):\n    api.query('vehicles')"
        result = engine.execute(script, config={"api_call_limit": 3})

        assert result.api_call_count == 3
        assert len(result.api_calls) == 3
        assert [e.kind for e in result.errors] == [ErrorKind.API_CALL_LIMIT_EXCEEDED]
        assert any("API call limit exceeded (3)" in line for line in result.logs)

    def test_api_call_limit_cannot_be_swallowed(self, engine):
        script = (
            "for i in range(5):\n"
            "    try:\n"
            "        api.query('vehicles')\n"
            "    except Exception:\n"
            "        console.log('caught')\n"
        )
        result = engine.execute(script, config={"api_call_limit": 2})

        assert [e.kind for e in result.errors] == [ErrorKind.API_CALL_LIMIT_EXCEEDED]
        assert not any(line.endswith("caught") for line in result.logs)

    def test_limit_takes_precedence_over_script_error(self, engine):
        script = (
            "for i in range(3):\n"
            "    try:\n"
            "        api.query('vehicles')\n"
            "    except BaseException:\n"
            "        raise ValueError('after limit')\n"
        )
        result = engine.execute(script, config={"api_call_limit": 1})
        assert [e.kind for e in result.errors] == [ErrorKind.API_CALL_LIMIT_EXCEEDED]

    def test_memory_limit(self, engine):
        script = "blob = b'x' * (200 * 1024 * 1024)\nwhile True:\n    pass"
        result = engine.execute(script, config={"memory_limit_bytes": 96 * 1024 * 1024, "timeout_ms": 20000})

        assert [e.kind for e in result.errors] == [ErrorKind.MEMORY_EXCEEDED]
        assert result.peak_memory_bytes > 96 * 1024 * 1024


# =============================================================================
# CONCURRENCY AND CONTROL
# =============================================================================

class TestControl:

    def test_cancel_running_execution(self, engine):
        results = []
        worker = threading.Thread(
            target=lambda: results.append(engine.execute("while True:\n    pass", config={"timeout_ms": 20000}))
        )
        worker.start()

        deadline = time.monotonic() + 10
        active = []
        while not active and time.monotonic() < deadline:
            active = engine.active_executions()
            time.sleep(0.02)
        assert active, "execution never became active"
        assert engine.stats()["active_executions"] == 1

        assert engine.cancel(active[0].test_id) is True
        worker.join(timeout=10)

        assert [e.kind for e in results[0].errors] == [ErrorKind.CANCELLED]
        assert engine.active_executions() == []

    def test_cancel_unknown_execution(self, engine):
        assert engine.cancel("test-missing") is False

    def test_execute_many_keeps_job_order(self, engine):
        jobs = [
            {"script_source": f"console.log({n})", "project_id": "batch"}
            for n in range(4)
        ]
        results = engine.execute_many(jobs, max_workers=2)

        assert [r.logs[0].split("] ")[1] for r in results] == ["0", "1", "2", "3"]
        assert all(r.project_id == "batch" for r in results)
        assert len({r.id for r in results}) == 4

    def test_execute_many_with_no_jobs(self, engine):
        assert engine.execute_many([]) == []

    def test_idle_stats(self, engine):
        assert engine.stats() == {
            "active_executions": 0,
            "fixture_sets": 3,
            "average_execution_time_ms": 0.0,
        }


# =============================================================================
# PUBLISHING
# =============================================================================

class TestPublishing:

    def test_result_and_metrics_are_published(self, settings, store):
        reporter = RecordingReporter()
        engine = ExecutionEngine(settings, reporter=reporter, metrics=store)

        result = engine.execute("api.query('vehicles')", project_id="p1", version_id="v2")

        assert reporter.results == [result]
        execution = store.query(MetricFilter(kind=MetricKind.EXECUTION))
        assert {m.name for m in execution} == {
            "codepage_execution_time",
            "codepage_memory_usage",
            "codepage_api_calls",
            "codepage_errors",
        }
        assert all(m.metadata["project_id"] == "p1" for m in execution)
        assert all(m.metadata["status"] == "passed" for m in execution)
        latency = store.query(MetricFilter(name="api_response_time"))
        assert len(latency) == 1
        assert latency[0].metadata["method"] == "query"

    def test_failing_hook_does_not_raise(self, settings):
        engine = ExecutionEngine(settings, reporter=RecordingReporter(fail=True))
        result = engine.execute("console.log('still fine')")
        assert result.status == ExecutionStatus.PASSED
