"""Domain services for rule evaluation, alert lifecycle and health."""

import math
import threading
from concurrent.futures import Executor, Future, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from loguru import logger

from codepage_sandbox.domains.execution.models import utcnow
from codepage_sandbox.domains.monitoring.models import (
    Alert,
    AlertRule,
    AlertRuleUpdate,
    Condition,
    HealthSnapshot,
    HealthStatus,
    Metric,
    RuleKind,
    Severity,
)
from codepage_sandbox.exceptions import AlertNotFoundError, AlertRuleNotFoundError
from codepage_sandbox.infrastructure.storage.repository import InMemoryRepository, Repository

EQUALITY_TOLERANCE = 0.001
ANOMALY_MIN_SAMPLES = 5
ERROR_STATUSES = frozenset({"error", "failed"})


def compare(condition: Condition, value: float, threshold: float) -> bool:
    if condition == Condition.GT:
        return value > threshold
    if condition == Condition.LT:
        return value < threshold
    if condition == Condition.EQ:
        return abs(value - threshold) < EQUALITY_TOLERANCE
    if condition == Condition.NEQ:
        return abs(value - threshold) >= EQUALITY_TOLERANCE
    return False


def severity_for(trigger_value: float, threshold: float) -> Severity:
    """Severity grows with the relative distance from the threshold."""
    denominator = abs(threshold) if threshold else 1.0
    ratio = abs(trigger_value - threshold) / denominator
    if ratio >= 2:
        return Severity.CRITICAL
    if ratio >= 1:
        return Severity.HIGH
    if ratio >= 0.5:
        return Severity.MEDIUM
    return Severity.LOW


def is_error_like(metric: Metric) -> bool:
    meta = metric.metadata
    status_code = meta.get("status_code")
    if isinstance(status_code, (int, float)) and status_code >= 400:
        return True
    if meta.get("error"):
        return True
    return str(meta.get("status", "")).lower() in ERROR_STATUSES


def trigger_value(rule: AlertRule, metric: Metric, window: Sequence[Metric]) -> Optional[float]:
    """
    Computes the value compared against the rule's threshold.

    Args:
        rule: Rule being evaluated.
        metric: The freshly ingested metric that triggered evaluation.
        window: Metrics named ``rule.metric_name`` inside the rule's window.

    Returns:
        The trigger value, or None when the rule cannot be evaluated
        (empty window, or too few samples for anomaly detection).
    """
    if not window:
        return None

    if rule.kind == RuleKind.THRESHOLD:
        return metric.value

    if rule.kind == RuleKind.ERROR_RATE:
        errors = sum(1 for m in window if is_error_like(m))
        return errors / len(window)

    if rule.kind == RuleKind.ANOMALY:
        values = [m.value for m in window if m.id != metric.id]
        if len(values) < ANOMALY_MIN_SAMPLES:
            return None
        mean = sum(values) / len(values)
        stddev = math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))
        return abs(metric.value - mean) / max(stddev, 1.0)

    return None


def alert_message(rule: AlertRule, metric: Metric, value: float) -> str:
    if rule.kind == RuleKind.THRESHOLD:
        return (f"{rule.name}: {metric.name} is {value:g}{metric.unit} "
                f"(threshold: {rule.threshold:g}{metric.unit})")
    return (f"{rule.name}: {rule.kind.value} of {metric.name} is {value:.3f} "
            f"(threshold: {rule.threshold:g})")


def default_alert_rules() -> List[AlertRule]:
    """Built-in rules over the telemetry this service publishes itself."""
    channels = ["console", "log"]
    return [
        AlertRule(name="High Codepage Execution Time", kind=RuleKind.THRESHOLD,
                  metric_name="codepage_execution_time", condition=Condition.GT,
                  threshold=10000, window_minutes=5, channels=channels),
        AlertRule(name="High Memory Usage", kind=RuleKind.THRESHOLD,
                  metric_name="codepage_memory_usage", condition=Condition.GT,
                  threshold=128 * 1024 * 1024, window_minutes=5, channels=channels),
        AlertRule(name="High API Response Time", kind=RuleKind.THRESHOLD,
                  metric_name="api_response_time", condition=Condition.GT,
                  threshold=5000, window_minutes=10, channels=channels),
        AlertRule(name="High Error Rate", kind=RuleKind.ERROR_RATE,
                  metric_name="codepage_errors", condition=Condition.GT,
                  threshold=0.1, window_minutes=15, channels=channels),
        AlertRule(name="System CPU Usage", kind=RuleKind.THRESHOLD,
                  metric_name="system_cpu_usage", condition=Condition.GT,
                  threshold=80, window_minutes=5, channels=channels),
    ]


class AlertEngine:
    """Evaluates active rules against every ingested metric.

    ``metrics`` must provide ``window(name, minutes) -> [Metric]``;
    ``dispatcher`` must provide ``dispatch(alert, channel_names)``.

    With a ``notifier`` executor, notifications are delivered on its
    threads so a slow channel never holds up metric ingestion. Without
    one they are delivered inline.
    """

    def __init__(
        self,
        metrics: Any,
        dispatcher: Any = None,
        rules: Optional[Repository[AlertRule]] = None,
        alerts: Optional[Repository[Alert]] = None,
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional[Executor] = None,
    ):
        self._metrics = metrics
        self._dispatcher = dispatcher
        self._rules = rules if rules is not None else InMemoryRepository()
        self._alerts = alerts if alerts is not None else InMemoryRepository()
        self._clock = clock
        self._notifier = notifier
        self._pending: Set[Future] = set()
        self._open: Dict[str, str] = {}  # rule id -> unresolved alert id
        self._lock = threading.RLock()

    # -- rules ----------------------------------------------------------

    def install_default_rules(self) -> List[AlertRule]:
        installed = [self.create_rule(rule) for rule in default_alert_rules()]
        logger.info(f"Initialized {len(installed)} default alert rules")
        return installed

    def create_rule(self, rule: Union[AlertRule, Dict[str, Any]]) -> AlertRule:
        if not isinstance(rule, AlertRule):
            rule = AlertRule(**rule)
        with self._lock:
            self._rules.put(rule.id, rule)
        logger.info(f"Created alert rule: {rule.name} ({rule.id})")
        return rule

    def get_rule(self, rule_id: str) -> AlertRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise AlertRuleNotFoundError(f"Alert rule not found: {rule_id}")
        return rule

    def rules(self) -> List[AlertRule]:
        return self._rules.list()

    def update_rule(self, rule_id: str, updates: Union[AlertRuleUpdate, Dict[str, Any]]) -> AlertRule:
        if not isinstance(updates, AlertRuleUpdate):
            updates = AlertRuleUpdate(**updates)
        with self._lock:
            rule = self.get_rule(rule_id)
            changes = updates.model_dump(exclude_unset=True, exclude_none=True)
            updated = rule.model_copy(update={**changes, "updated_at": self._clock()})
            updated = AlertRule.model_validate(updated.model_dump())
            self._rules.put(rule_id, updated)
        logger.info(f"Updated alert rule: {updated.name} ({', '.join(changes) or 'no changes'})")
        return updated

    def delete_rule(self, rule_id: str) -> None:
        with self._lock:
            rule = self.get_rule(rule_id)
            self._rules.delete(rule_id)
            alert_id = self._open.get(rule_id)
            if alert_id is not None:
                self._resolve_locked(alert_id)
        logger.info(f"Deleted alert rule: {rule.name}")

    # -- evaluation -----------------------------------------------------

    def evaluate(self, rule: AlertRule, metric: Metric) -> Optional[float]:
        """Returns the trigger value if ``rule`` fires for ``metric``, else None."""
        if metric.name != rule.metric_name:
            return None
        window = self._metrics.window(rule.metric_name, rule.window_minutes)
        value = trigger_value(rule, metric, window)
        if value is None:
            return None
        return value if compare(rule.condition, value, rule.threshold) else None

    def on_metric(self, metric: Metric) -> List[Alert]:
        """Evaluates every active rule for ``metric``. Returns fired alerts."""
        fired: List[Alert] = []
        for rule in self._rules.list(lambda r: r.active and r.metric_name == metric.name):
            try:
                value = self.evaluate(rule, metric)
                if value is not None:
                    fired.append(self._fire(rule, metric, value))
            except Exception as e:
                logger.error(f"Error evaluating alert rule {rule.name}: {e}")
        return fired

    def _fire(self, rule: AlertRule, metric: Metric, value: float) -> Alert:
        now = self._clock()
        with self._lock:
            existing_id = self._open.get(rule.id)
            existing = self._alerts.get(existing_id) if existing_id else None
            if existing is not None and not existing.resolved:
                existing.trigger_value = value
                existing.severity = severity_for(value, rule.threshold)
                existing.message = alert_message(rule, metric, value)
                existing.metadata = {**existing.metadata, **metric.metadata}
                existing.updated_at = now
                self._alerts.put(existing.id, existing)
                logger.debug(f"Alert {existing.id} updated: {existing.message}")
                return existing

            alert = Alert(
                rule_id=rule.id,
                rule_name=rule.name,
                severity=severity_for(value, rule.threshold),
                message=alert_message(rule, metric, value),
                trigger_value=value,
                threshold=rule.threshold,
                metadata=dict(metric.metadata),
                created_at=now,
                updated_at=now,
            )
            self._alerts.put(alert.id, alert)
            self._open[rule.id] = alert.id

        logger.warning(f"Alert triggered: {alert.message}")
        self._notify(alert, list(rule.channels))
        return alert

    # -- notifications --------------------------------------------------

    def _notify(self, alert: Alert, channels: List[str]) -> None:
        if self._dispatcher is None:
            return
        if self._notifier is None:
            self._deliver(alert, channels)
            return
        future = self._notifier.submit(self._deliver, alert, channels)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver(self, alert: Alert, channels: List[str]) -> None:
        try:
            self._dispatcher.dispatch(alert, channels)
        except Exception as e:
            logger.error(f"Error delivering alert {alert.id}: {e}")

    def wait_for_notifications(self, timeout: Optional[float] = None) -> bool:
        """Blocks until queued notifications are delivered. False on timeout."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    # -- alerts ---------------------------------------------------------

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert not found: {alert_id}")
        return alert

    def active_alerts(self) -> List[Alert]:
        return self._alerts.list(lambda a: not a.resolved)

    def all_alerts(self, limit: int = 100) -> List[Alert]:
        alerts = sorted(self._alerts.list(), key=lambda a: a.created_at, reverse=True)
        return alerts[:limit]

    def resolve(self, alert_id: str) -> Alert:
        """Resolves an alert. Resolving an already resolved alert is a no-op."""
        with self._lock:
            return self._resolve_locked(alert_id)

    def _resolve_locked(self, alert_id: str) -> Alert:
        alert = self.get_alert(alert_id)
        if alert.resolved:
            return alert
        alert.resolved = True
        alert.resolved_at = self._clock()
        self._alerts.put(alert.id, alert)
        if self._open.get(alert.rule_id) == alert.id:
            del self._open[alert.rule_id]
        logger.info(f"Resolved alert: {alert.message}")
        return alert


def _average(metrics: Sequence[Metric]) -> float:
    return sum(m.value for m in metrics) / len(metrics) if metrics else 0.0


def assess_health(
    active_alerts: Sequence[Alert],
    cpu_metrics: Sequence[Metric],
    memory_metrics: Sequence[Metric],
    latency_metrics: Sequence[Metric],
    uptime_seconds: float,
) -> HealthSnapshot:
    """Derives the service health from open alerts and recent resource averages."""
    critical = [a for a in active_alerts if a.severity == Severity.CRITICAL]
    avg_cpu = _average(cpu_metrics)
    avg_memory = _average(memory_metrics)
    avg_latency = _average(latency_metrics)

    status = HealthStatus.HEALTHY
    if critical or avg_cpu > 90 or avg_latency > 10000:
        status = HealthStatus.CRITICAL
    elif active_alerts or avg_cpu > 70 or avg_latency > 5000:
        status = HealthStatus.WARNING

    return HealthSnapshot(
        status=status,
        active_alerts=len(active_alerts),
        critical_alerts=len(critical),
        cpu_usage_percent=round(avg_cpu, 2),
        memory_usage_mb=round(avg_memory / 1024 / 1024, 2),
        response_time_ms=round(avg_latency, 2),
        uptime_seconds=uptime_seconds,
    )
