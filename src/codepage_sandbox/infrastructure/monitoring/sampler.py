"""Periodic host resource telemetry."""

from typing import Any, Optional

from loguru import logger

from codepage_sandbox.domains.monitoring.models import MetricKind
from codepage_sandbox.infrastructure.monitoring.loop import IntervalLoop
from codepage_sandbox.infrastructure.monitoring.system import SystemMonitor


class SystemSampler:
    """Records host CPU and service memory as ``system_resource`` metrics."""

    def __init__(self, metrics: Any, interval: float = 60.0, monitor: Optional[SystemMonitor] = None):
        self._metrics = metrics
        self._monitor = monitor or SystemMonitor()
        self._loop = IntervalLoop("system-sampler", interval, self.sample)

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> None:
        self._loop.start()

    def stop(self) -> None:
        self._loop.stop()

    def sample(self) -> None:
        stats = self._monitor.get_detailed_stats()
        self._metrics.record_value(
            MetricKind.SYSTEM_RESOURCE,
            "system_cpu_usage",
            stats["cpu_percent"],
            "percent",
            {"host_memory_percent": stats["host_memory_percent"]},
        )
        self._metrics.record_value(
            MetricKind.SYSTEM_RESOURCE,
            "system_memory_usage",
            stats["process_rss_bytes"],
            "bytes",
            {"host_memory_available_bytes": stats["host_memory_available_bytes"]},
        )
        logger.debug(f"System sample: cpu={stats['cpu_percent']}% rss={stats['process_rss_bytes']}")
