"""Per-run resource accounting.

Only the standard library is used here: the sandbox child process imports this
module to enforce the API call ceiling synchronously, and it must stay cheap
to import there.
"""

import threading
import time
from typing import List, Optional

from codepage_sandbox.infrastructure.enforcement.limits import (
    ApiCallLimitExceeded,
    MemoryExceeded,
    TimeoutExceeded,
)


class ResourceMonitor:
    """Tracks elapsed time, memory samples and API calls for one run.

    The first limit that is hit becomes the terminal violation; later ones are
    ignored.
    """

    def __init__(self, timeout_ms: int, memory_limit_bytes: int, api_call_limit: int):
        self.timeout_ms = timeout_ms
        self.memory_limit_bytes = memory_limit_bytes
        self.api_call_limit = api_call_limit
        self.memory_samples: List[int] = []
        self.api_call_count = 0
        self._started = time.monotonic()
        self._deadline = self._started + timeout_ms / 1000.0
        self._violation: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def start(cls, config) -> "ResourceMonitor":
        """Starts accounting for a run described by an ExecutionConfig-like object."""
        return cls(
            timeout_ms=config.timeout_ms,
            memory_limit_bytes=config.memory_limit_bytes,
            api_call_limit=config.api_call_limit,
        )

    @property
    def violation(self) -> Optional[str]:
        return self._violation

    @property
    def peak_memory(self) -> int:
        return max(self.memory_samples, default=0)

    def _flag(self, kind: str) -> None:
        if self._violation is None:
            self._violation = kind

    def flag(self, kind: str) -> None:
        """Records a violation observed elsewhere (child process, cancel request)."""
        with self._lock:
            self._flag(kind)

    def sample_memory(self, rss_bytes: int) -> bool:
        """Records a sample. Returns False once the memory limit is exceeded."""
        with self._lock:
            self.memory_samples.append(rss_bytes)
            if rss_bytes > self.memory_limit_bytes:
                self._flag(MemoryExceeded.kind)
                return False
            return True

    def record_api_call(self) -> bool:
        """Counts a call attempt. Returns False if it would pass the ceiling."""
        with self._lock:
            if self.api_call_count >= self.api_call_limit:
                self._flag(ApiCallLimitExceeded.kind)
                return False
            self.api_call_count += 1
            return True

    def elapsed(self) -> float:
        """Milliseconds since start."""
        return (time.monotonic() - self._started) * 1000.0

    def remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        return max(0.0, self._deadline - time.monotonic())

    def is_expired(self) -> bool:
        if time.monotonic() >= self._deadline:
            with self._lock:
                self._flag(TimeoutExceeded.kind)
            return True
        return False

    def usage(self) -> dict:
        """Read-only snapshot exposed to scripts."""
        return {
            "memory_usage": self.peak_memory,
            "api_call_count": self.api_call_count,
            "execution_time_ms": round(self.elapsed(), 3),
        }
