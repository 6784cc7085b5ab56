"""System monitoring infrastructure using psutil."""

import os
import psutil
from typing import Optional, Tuple
from loguru import logger


class ProcessMonitor:
    """Resource usage of a single (sandbox) process."""

    def __init__(self, pid: int):
        self.pid = pid
        self._process = psutil.Process(pid)

    def memory_bytes(self) -> Optional[int]:
        """
        Returns the resident set size of the process including its children.

        Returns:
            Optional[int]: RSS in bytes, or None once the process is gone.
        """
        try:
            rss = self._process.memory_info().rss
            for child in self._process.children(recursive=True):
                try:
                    rss += child.memory_info().rss
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
            return rss
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied as e:
            logger.debug(f"Cannot read memory of process {self.pid}: {e}")
            return None

    def get_stats(self) -> Tuple[float, Optional[int]]:
        """
        Returns current process resource usage.

        Returns:
            Tuple[float, Optional[int]]: (cpu_percent, rss_bytes)
        """
        try:
            # cpu_percent(interval=None) is non-blocking and compares to last call
            cpu = self._process.cpu_percent(interval=None)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            cpu = 0.0
        return cpu, self.memory_bytes()


class SystemMonitor:
    """Host and service-process resource usage."""

    def __init__(self):
        self._process = psutil.Process(os.getpid())
        # First call primes the counters and returns 0.0
        psutil.cpu_percent(interval=None)

    def get_stats(self) -> Tuple[float, int]:
        """
        Returns host CPU and this service's memory.

        Returns:
            Tuple[float, int]: (cpu_percent, rss_bytes)
        """
        cpu = psutil.cpu_percent(interval=None)
        return cpu, self._process.memory_info().rss

    def get_detailed_stats(self) -> dict:
        """Host-wide usage used for the health snapshot and sampler."""
        cpu, rss = self.get_stats()
        virtual = psutil.virtual_memory()
        return {
            "cpu_percent": cpu,
            "process_rss_bytes": rss,
            "host_memory_percent": virtual.percent,
            "host_memory_available_bytes": virtual.available,
        }
