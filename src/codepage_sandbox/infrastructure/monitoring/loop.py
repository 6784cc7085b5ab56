"""Background loop infrastructure."""

import threading
from typing import Callable, Optional
from loguru import logger


class IntervalLoop:
    """Runs a callback on a daemon thread every ``interval`` seconds until stopped."""

    def __init__(self, name: str, interval: float, callback: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Starts the loop thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"codepage-{self.name}"
        )
        self._thread.start()
        logger.debug(f"Loop {self.name} started (every {self.interval}s)")

    def stop(self) -> None:
        """Stops the loop thread."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None
        logger.debug(f"Loop {self.name} stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.callback()
            except Exception as e:
                # A failing tick must not kill the loop
                logger.error(f"Loop {self.name} error: {e}")
