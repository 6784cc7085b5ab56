"""Buffered, retention-pruned metric storage."""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from codepage_sandbox.domains.execution.models import utcnow
from codepage_sandbox.domains.monitoring.models import (
    Metric,
    MetricFilter,
    MetricKind,
    MetricsSummary,
)
from codepage_sandbox.infrastructure.monitoring.loop import IntervalLoop
from codepage_sandbox.infrastructure.storage.repository import InMemoryRepository, Repository

RETENTION = timedelta(hours=24)

MetricListener = Callable[[Metric], Any]


class MetricsStore:
    """Append-only metric ingestion.

    ``record`` appends to an in-memory buffer; a full buffer is flushed as one
    batch into the retained repository, which is pruned to the last 24 hours
    on every flush. Buffer and repository writes share one lock. Listeners
    (the alert engine) are called after the append, outside the lock.
    """

    def __init__(
        self,
        repository: Optional[Repository[Metric]] = None,
        buffer_size: int = 1000,
        flush_interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository if repository is not None else InMemoryRepository()
        self.buffer_size = buffer_size
        self._clock = clock
        self._buffer: List[Metric] = []
        self._lock = threading.Lock()
        self._listeners: List[MetricListener] = []
        self._flusher = IntervalLoop("metrics-flush", flush_interval, self.flush)

    # -- lifecycle ------------------------------------------------------

    def start(self) -> None:
        self._flusher.start()

    def stop(self) -> None:
        self._flusher.stop()
        self.flush()

    def subscribe(self, listener: MetricListener) -> None:
        self._listeners.append(listener)

    # -- ingestion ------------------------------------------------------

    def record(self, metric: Metric) -> Metric:
        with self._lock:
            self._buffer.append(metric)
            if len(self._buffer) >= self.buffer_size:
                self._flush_locked()

        for listener in self._listeners:
            try:
                listener(metric)
            except Exception as e:
                logger.error(f"Metric listener failed for {metric.name}: {e}")
        return metric

    def record_value(
        self,
        kind: MetricKind,
        name: str,
        value: float,
        unit: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Metric:
        metric = Metric(
            kind=kind,
            name=name,
            value=value,
            unit=unit,
            timestamp=self._clock(),
            metadata=metadata or {},
        )
        return self.record(metric)

    def flush(self) -> int:
        """Moves the buffer into the retained store. Returns the flushed count."""
        with self._lock:
            return self._flush_locked()

    def _flush_locked(self) -> int:
        if not self._buffer:
            return 0

        batch = self._buffer
        self._buffer = []
        try:
            self._repository.put_many((m.id, m) for m in batch)
            cutoff = self._clock() - RETENTION
            pruned = self._repository.delete_where(lambda m: m.timestamp < cutoff)
        except Exception as e:
            # Keep the batch for the next attempt, ahead of anything newer
            self._buffer = batch + self._buffer
            logger.error(f"Metrics flush of {len(batch)} metrics failed, re-queued: {e}")
            return 0

        logger.debug(f"Flushed {len(batch)} metrics to storage ({pruned} expired)")
        return len(batch)

    # -- queries --------------------------------------------------------

    @property
    def buffered(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def retained(self) -> int:
        return len(self._repository)

    def _matching(self, predicate: Callable[[Metric], bool]) -> List[Metric]:
        with self._lock:
            pending = [m for m in self._buffer if predicate(m)]
            stored = self._repository.list(predicate)
        seen = {m.id for m in pending}
        metrics = pending + [m for m in stored if m.id not in seen]
        metrics.sort(key=lambda m: m.timestamp, reverse=True)
        return metrics

    def query(self, metric_filter: Optional[MetricFilter] = None) -> List[Metric]:
        """Matching metrics, newest first, capped at ``filter.limit``."""
        metric_filter = metric_filter or MetricFilter()
        return self._matching(metric_filter.matches)[:metric_filter.limit]

    def window(self, name: str, minutes: float) -> List[Metric]:
        """Every metric named ``name`` from the last ``minutes``, newest first."""
        start = self._clock() - timedelta(minutes=minutes)
        return self._matching(lambda m: m.name == name and m.timestamp >= start)

    def summarize(self, kind: Optional[MetricKind] = None, window_minutes: float = 60) -> MetricsSummary:
        now = self._clock()
        start = now - timedelta(minutes=window_minutes)
        metrics = self._matching(
            lambda m: m.timestamp >= start and (kind is None or m.kind == kind)
        )
        if not metrics:
            return MetricsSummary(window_start=start, window_end=now)

        values = [m.value for m in metrics]
        return MetricsSummary(
            total=len(values),
            average=sum(values) / len(values),
            minimum=min(values),
            maximum=max(values),
            window_start=start,
            window_end=now,
        )
