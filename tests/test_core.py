"""Tests of the composed service as callers use it."""

import pytest

from codepage_sandbox.core import CodepageCore
from codepage_sandbox.domains.execution.models import ExecutionStatus
from codepage_sandbox.domains.monitoring.models import HealthStatus, MetricKind
from codepage_sandbox.exceptions import NoResultsError
from codepage_sandbox.infrastructure.metrics.store import MetricsStore


@pytest.fixture
def core(settings, clock, dispatcher):
    return CodepageCore(settings, metrics=MetricsStore(clock=clock), dispatcher=dispatcher)


def test_default_rules_installed_when_enabled(settings):
    enabled = settings.model_copy(update={"install_default_rules": True})
    assert len(CodepageCore(enabled).alert_rules()) == 5


def test_default_error_rate_rule_fires_on_errored_runs(settings, clock, dispatcher):
    enabled = settings.model_copy(update={"install_default_rules": True})
    core = CodepageCore(enabled, metrics=MetricsStore(clock=clock), dispatcher=dispatcher)

    core.execute("raise ValueError('bad quote')", project_id="quotes", version_id="v5")
    core.execute("raise KeyError('missing')", project_id="quotes", version_id="v5")

    fired = [a for a in core.get_active_alerts() if a.rule_name == "High Error Rate"]
    assert len(fired) == 1
    assert fired[0].trigger_value == 1.0
    assert fired[0].metadata["status"] == "error"
    assert core.alerts.wait_for_notifications(timeout=5)
    assert (fired[0].id, ["console", "log"]) in dispatcher.sent


def test_no_rules_when_disabled(core):
    assert core.alert_rules() == []


def test_execution_feeds_reports_and_metrics(core):
    result = core.execute("api.query('vehicles')\nconsole.log('ok')", project_id="quotes", version_id="v3")

    assert result.status == ExecutionStatus.PASSED
    report = core.generate_report("quotes", "v3")
    assert report.summary.total_tests == 1
    assert core.get_report(report.id) == report
    names = {m.name for m in core.get_metrics({"kind": "execution"})}
    assert "codepage_execution_time" in names
    assert core.metrics_summary(MetricKind.EXECUTION).total == 4


def test_errored_execution_generates_report(core):
    core.execute("raise ValueError('bad quote')", project_id="quotes", version_id="v4")

    reports = core.reports.project_reports("quotes")
    assert len(reports) == 1
    assert reports[0].error_analysis.errors_by_kind == {"ScriptError": 1}


def test_report_for_unknown_key(core):
    with pytest.raises(NoResultsError):
        core.generate_report("nobody", "v0")


def test_metric_triggers_alert_and_notification(core, dispatcher):
    rule = core.create_alert_rule({
        "name": "Slow quotes",
        "kind": "threshold",
        "metric_name": "quote_latency",
        "condition": "gt",
        "threshold": 100,
        "window_minutes": 5,
        "channels": ["console", "log"],
    })

    core.record_metric("api_response", "quote_latency", 250, "ms", {"endpoint": "/quote"})

    active = core.get_active_alerts()
    assert len(active) == 1
    assert active[0].rule_id == rule.id
    assert core.alerts.wait_for_notifications(timeout=5)
    assert dispatcher.sent == [(active[0].id, ["console", "log"])]

    core.resolve_alert(active[0].id)
    assert core.get_active_alerts() == []

    updated = core.update_alert_rule(rule.id, {"threshold": 500})
    assert updated.threshold == 500
    core.delete_alert_rule(rule.id)
    assert core.alert_rules() == []


class TestSystemHealth:

    def test_healthy_without_data(self, core):
        health = core.system_health()
        assert health.status == HealthStatus.HEALTHY
        assert health.active_alerts == 0
        assert health.uptime_seconds >= 0

    def test_high_cpu_is_critical(self, core):
        core.record_metric(MetricKind.SYSTEM_RESOURCE, "system_cpu_usage", 95, "percent")
        assert core.system_health().status == HealthStatus.CRITICAL

    def test_sampler_feeds_health(self, core):
        core.sampler.sample()

        assert len(core.get_metrics({"name": "system_cpu_usage"})) == 1
        assert core.system_health().memory_usage_mb > 0


def test_start_and_stop(core):
    with core as running:
        assert running.sampler.running
        core.record_metric("execution", "custom", 1, "count")
    assert not core.sampler.running
    assert core.metrics.buffered == 0
