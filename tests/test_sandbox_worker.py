"""In-process tests of the sandbox child entry point."""

import ast

import pytest

from codepage_sandbox.infrastructure.sandbox.worker import (
    SCRIPT_FILENAME,
    SandboxViolation,
    check_source,
    describe_exception,
    run_script,
)

LIMITS = {"timeout_ms": 5000, "memory_limit_bytes": 1 << 34, "api_call_limit": 3}


class FakeConn:
    def __init__(self):
        self.sent = []
        self.closed = False

    def send(self, message):
        self.sent.append(message)

    def close(self):
        self.closed = True


def run(source, test_data=None, limits=LIMITS):
    conn = FakeConn()
    run_script(conn, source, test_data, None, limits, 0.0)
    assert conn.closed
    return conn.sent


def terminal(events):
    return events[-1]


# =============================================================================
# SOURCE CHECKS
# =============================================================================

class TestCheckSource:

    @pytest.mark.parametrize("source", [
        "import os",
        "from os import path",
        "x = ().__class__",
        "y = __import__",
        "obj._secret",
    ])
    def test_rejected_constructs(self, source):
        with pytest.raises(SandboxViolation):
            check_source(ast.parse(source))

    def test_plain_script_is_accepted(self):
        check_source(ast.parse("x = [v * 2 for v in range(3)]\nconsole.log(x)"))

    def test_violation_is_a_syntax_error_with_position(self):
        with pytest.raises(SyntaxError) as exc_info:
            check_source(ast.parse("a = 1\nimport sys"))
        assert exc_info.value.lineno == 2
        assert exc_info.value.filename == SCRIPT_FILENAME


# =============================================================================
# RUN SCRIPT
# =============================================================================

class TestRunScript:

    def test_console_output_is_captured_in_order(self):
        events = run("console.log('a', 1)\nprint('b')\nconsole.error('c')")

        logs = [payload for kind, payload in events if kind == "log"]
        assert logs[0].endswith("] a 1")
        assert logs[1].endswith("] b")
        assert logs[2].endswith("] ERROR: c")
        assert terminal(events)[0] == "done"
        assert terminal(events)[1]["rss"] > 0

    def test_test_data_is_exposed(self):
        events = run("console.log(testData['name'])", test_data={"name": "quote"})
        assert events[0][1].endswith("] quote")

    def test_api_calls_are_streamed(self):
        events = run("api.query('vehicles')\napi.get('vehicles', 1)")
        assert [p["method"] for k, p in events if k == "api_call"] == ["query", "get"]

    def test_script_exception_is_described(self):
        events = run("x = 1\nundefined_name + x")

        kind, payload = terminal(events)
        assert kind == "error"
        assert payload["type"] == "NameError"
        assert "NameError" in payload["mro"]
        assert payload["line"] == 2
        assert "undefined_name" in payload["message"]

    def test_syntax_error_reports_position(self):
        kind, payload = terminal(run("x = (1,\n"))
        assert kind == "error"
        assert payload["type"] == "SyntaxError"
        assert payload["line"] is not None

    def test_import_is_reported_as_syntax_error(self):
        kind, payload = terminal(run("import os"))
        assert kind == "error"
        assert "SyntaxError" in payload["mro"]

    def test_open_is_not_available(self):
        kind, payload = terminal(run("open('/etc/passwd')"))
        assert kind == "error"
        assert payload["type"] == "NameError"

    @pytest.mark.parametrize("source", [
        "json.codecs.open('/etc/hostname')",
        "json.decoder.re.compile('x')",
        "datetime.sys.modules",
        "math.sys",
    ])
    def test_host_modules_are_unreachable(self, source):
        kind, payload = terminal(run(source))
        assert kind == "error"
        assert payload["type"] == "AttributeError"

    def test_helper_namespaces_work(self):
        source = (
            "data = json.loads(json.dumps({'n': 4}))\n"
            "delta = datetime.timedelta(minutes=1)\n"
            "now = datetime.datetime.now(datetime.timezone.utc)\n"
            "console.log(math.sqrt(data['n']), delta.total_seconds(), now.year > 2000)"
        )
        events = run(source)
        assert terminal(events)[0] == "done"
        assert events[0][1].endswith("] 2.0 60.0 True")

    def test_api_limit_reported_as_limit(self):
        events = run("for i in range(5):\n    api.query('vehicles')")

        assert terminal(events) == ("limit", "ApiCallLimitExceeded")
        assert len([e for e in events if e[0] == "api_call"]) == 3

    def test_swallowed_api_limit_is_still_reported(self):
        """Verify that catching BaseException in the script does not hide the limit."""
        source = (
            "for i in range(5):\n"
            "    try:\n"
            "        api.query('vehicles')\n"
            "    except BaseException:\n"
            "        pass\n"
        )
        assert terminal(run(source)) == ("limit", "ApiCallLimitExceeded")

    def test_resource_usage_binding(self):
        events = run("u = get_resource_usage()\nconsole.log(u['api_call_count'], u['memory_usage'] > 0)")
        assert events[0][1].endswith("] 0 True")


def test_describe_exception_without_script_frame():
    try:
        raise ValueError("boom")
    except ValueError as exc:
        described = describe_exception(exc)

    assert described["type"] == "ValueError"
    assert described["message"] == "boom"
    assert described["line"] is None
    assert "Traceback" in described["stack"]
