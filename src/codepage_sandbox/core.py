"""Composition root wiring the engine, reporting, metrics and alerting."""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger

from codepage_sandbox.config import Settings, get_settings
from codepage_sandbox.domains.execution.models import ExecutionConfig, ExecutionJob, ExecutionResult
from codepage_sandbox.domains.monitoring.models import (
    Alert,
    AlertRule,
    AlertRuleUpdate,
    HealthSnapshot,
    Metric,
    MetricFilter,
    MetricKind,
    MetricsSummary,
)
from codepage_sandbox.domains.monitoring.services import AlertEngine, assess_health
from codepage_sandbox.domains.reporting.models import ReportOptions, TestReport
from codepage_sandbox.domains.reporting.services import ReportAggregator
from codepage_sandbox.infrastructure.metrics.store import MetricsStore
from codepage_sandbox.infrastructure.monitoring.sampler import SystemSampler
from codepage_sandbox.infrastructure.notifications.channels import NotificationDispatcher
from codepage_sandbox.infrastructure.sandbox.engine import ExecutionEngine

HEALTH_WINDOW_MINUTES = 5
NOTIFICATION_DRAIN_TIMEOUT = 15.0


class CodepageCore:
    """
    Single entry point for callers (HTTP handlers, CLI, schedulers).

    Components are built from settings unless passed in. Background loops
    (metrics flush, system sampling) only run between ``start`` and ``stop``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        alerts: Optional[AlertEngine] = None,
        reports: Optional[ReportAggregator] = None,
        engine: Optional[ExecutionEngine] = None,
        sampler: Optional[SystemSampler] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.metrics = metrics or MetricsStore(
            buffer_size=s.metrics_buffer_size,
            flush_interval=s.metrics_flush_interval,
        )
        self.dispatcher = dispatcher or NotificationDispatcher.from_settings(s)
        self.alerts = alerts or AlertEngine(
            self.metrics,
            self.dispatcher,
            notifier=ThreadPoolExecutor(max_workers=s.notification_workers, thread_name_prefix="codepage-notify"),
        )
        self.metrics.subscribe(self.alerts.on_metric)
        self.reports = reports or ReportAggregator(
            history_size=s.report_history_size,
            result_sample=s.report_result_sample,
        )
        self.engine = engine or ExecutionEngine(s, reporter=self.reports, metrics=self.metrics)
        self.sampler = sampler or SystemSampler(self.metrics, interval=s.system_sample_interval)

        if s.install_default_rules:
            self.alerts.install_default_rules()

        self._started_at = time.monotonic()
        self._running = False

    # -- lifecycle ------------------------------------------------------

    def start(self) -> "CodepageCore":
        if self._running:
            return self
        self.metrics.start()
        self.sampler.start()
        self._running = True
        logger.info(f"{self.settings.app_name} {self.settings.app_version} started")
        return self

    def stop(self) -> None:
        if not self._running:
            return
        self.sampler.stop()
        self.metrics.stop()
        if not self.alerts.wait_for_notifications(NOTIFICATION_DRAIN_TIMEOUT):
            logger.warning("Some alert notifications were still pending at shutdown")
        self._running = False
        logger.info(f"{self.settings.app_name} stopped")

    def __enter__(self) -> "CodepageCore":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    # -- execution ------------------------------------------------------

    def execute(
        self,
        script_source: str,
        test_data: Any = None,
        config: Optional[Union[ExecutionConfig, Dict[str, Any]]] = None,
        project_id: str = "adhoc",
        version_id: str = "current",
    ) -> ExecutionResult:
        return self.engine.execute(script_source, test_data, config, project_id, version_id)

    def execute_many(
        self,
        jobs: Iterable[Union[ExecutionJob, Dict[str, Any]]],
        max_workers: Optional[int] = None,
    ) -> List[ExecutionResult]:
        return self.engine.execute_many(jobs, max_workers)

    # -- reporting ------------------------------------------------------

    def generate_report(
        self,
        project_id: str,
        version_id: str,
        options: Optional[Union[ReportOptions, Dict[str, Any]]] = None,
    ) -> TestReport:
        return self.reports.generate(project_id, version_id, options)

    def get_report(self, report_id: str) -> Optional[TestReport]:
        return self.reports.get(report_id)

    # -- metrics --------------------------------------------------------

    def record_metric(
        self,
        kind: Union[MetricKind, str],
        name: str,
        value: float,
        unit: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Metric:
        return self.metrics.record_value(MetricKind(kind), name, value, unit, metadata)

    def get_metrics(self, metric_filter: Optional[Union[MetricFilter, Dict[str, Any]]] = None) -> List[Metric]:
        if isinstance(metric_filter, dict):
            metric_filter = MetricFilter(**metric_filter)
        return self.metrics.query(metric_filter)

    def metrics_summary(self, kind: Optional[MetricKind] = None, window_minutes: float = 60) -> MetricsSummary:
        return self.metrics.summarize(kind, window_minutes)

    # -- alerting -------------------------------------------------------

    def create_alert_rule(self, rule: Union[AlertRule, Dict[str, Any]]) -> AlertRule:
        return self.alerts.create_rule(rule)

    def update_alert_rule(self, rule_id: str, updates: Union[AlertRuleUpdate, Dict[str, Any]]) -> AlertRule:
        return self.alerts.update_rule(rule_id, updates)

    def delete_alert_rule(self, rule_id: str) -> None:
        self.alerts.delete_rule(rule_id)

    def alert_rules(self) -> List[AlertRule]:
        return self.alerts.rules()

    def get_active_alerts(self) -> List[Alert]:
        return self.alerts.active_alerts()

    def resolve_alert(self, alert_id: str) -> Alert:
        return self.alerts.resolve(alert_id)

    # -- health ---------------------------------------------------------

    def system_health(self) -> HealthSnapshot:
        window = HEALTH_WINDOW_MINUTES
        return assess_health(
            active_alerts=self.alerts.active_alerts(),
            cpu_metrics=self.metrics.window("system_cpu_usage", window),
            memory_metrics=self.metrics.window("system_memory_usage", window),
            latency_metrics=self.metrics.window("api_response_time", window),
            uptime_seconds=round(time.monotonic() - self._started_at, 3),
        )
