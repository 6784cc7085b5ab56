import json

import pytest

from codepage_sandbox.cli import build_parser, main


@pytest.fixture(autouse=True)
def fast_sandbox(monkeypatch):
    monkeypatch.setenv("CODEPAGE_SANDBOX__MOCK_LATENCY_SCALE", "0")
    monkeypatch.setenv("CODEPAGE_SANDBOX__INSTALL_DEFAULT_RULES", "false")


def write_script(tmp_path, source):
    path = tmp_path / "script.py"
    path.write_text(source)
    return str(path)


def test_run_passing_script(tmp_path, capsys):
    script = write_script(tmp_path, "console.log(testData['customer'])")
    data = tmp_path / "data.json"
    data.write_text(json.dumps({"customer": "ACME"}))

    code = main(["run", script, "--test-data", str(data)])

    output = json.loads(capsys.readouterr().out)
    assert code == 0
    assert output["result"]["status"] == "passed"
    assert output["result"]["logs"][0].endswith("] ACME")
    assert "report" not in output


def test_run_failing_script_with_report(tmp_path, capsys):
    script = write_script(tmp_path, "for i in range(3):\n    api.query('vehicles')")

    code = main(["run", script, "--api-call-limit", "1", "--project", "cli", "--version", "v9", "--report"])

    output = json.loads(capsys.readouterr().out)
    assert code == 1
    assert output["result"]["errors"][0]["kind"] == "ApiCallLimitExceeded"
    assert output["report"]["project_id"] == "cli"
    assert output["report"]["summary"]["error_tests"] == 1


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
