"""
Memory governor for the shard orchestrator.

Watches the RSS of the process tree and asks the orchestrator to stop
dispatching shards once the configured cap is reached. In-flight shards
still finish and are checkpointed normally.
"""

import os
import threading
from typing import Callable, Dict

import psutil

from common.logging.logger import get_logger

logger = get_logger("resource_governor")


class MemoryGovernor(threading.Thread):
    """
    Monitors total RSS memory across the current process tree.

    When memory exceeds the configured limit, calls `on_limit` once.
    """

    def __init__(
        self,
        max_rss_gb: float,
        check_interval_seconds: float,
        on_limit: Callable[[], None],
    ):
        super().__init__(name="MemoryGovernor", daemon=True)

        if max_rss_gb is None:
            raise ValueError("max_rss_gb is required")
        if check_interval_seconds is None:
            raise ValueError("check_interval_seconds is required")
        if on_limit is None:
            raise ValueError("on_limit is required")
        if max_rss_gb <= 0:
            logger.error(f"Invalid max_rss_gb: {max_rss_gb}")
            raise ValueError("max_rss_gb must be > 0")
        if check_interval_seconds <= 0:
            logger.error(f"Invalid check_interval_seconds: {check_interval_seconds}")
            raise ValueError("check_interval_seconds must be > 0")

        self.max_rss_bytes = int(max_rss_gb * 1024 ** 3)
        self.check_interval_seconds = check_interval_seconds
        self._on_limit = on_limit
        self._stop_event = threading.Event()

        self._limit_triggered = False
        self._peak_rss_bytes = 0

    def run(self):
        """Main monitoring loop."""
        while not self._stop_event.is_set():
            try:
                total_rss = self.total_rss_bytes()
            except psutil.Error as e:
                logger.error(f"MemoryGovernor failed to read RSS: {e}")
                self._stop_event.wait(self.check_interval_seconds)
                continue

            self._peak_rss_bytes = max(self._peak_rss_bytes, total_rss)
            if total_rss >= self.max_rss_bytes and not self._limit_triggered:
                logger.warning(
                    f"Memory cap reached: rss={total_rss / 1024 ** 3:.2f}GB "
                    f"(limit={self.max_rss_bytes / 1024 ** 3:.2f}GB), stopping dispatch"
                )
                self._limit_triggered = True
                self._on_limit()

            self._stop_event.wait(self.check_interval_seconds)

    @staticmethod
    def total_rss_bytes() -> int:
        """Returns total RSS in bytes for current process tree."""
        process = psutil.Process(os.getpid())
        total = process.memory_info().rss
        for child in process.children(recursive=True):
            try:
                total += child.memory_info().rss
            except psutil.NoSuchProcess:
                continue
        return total

    def stop(self):
        """Stops the governor thread."""
        self._stop_event.set()

    @property
    def limit_triggered(self) -> bool:
        return self._limit_triggered

    def get_stats(self) -> Dict[str, float]:
        return {
            'peak_rss_gb': round(self._peak_rss_bytes / 1024 ** 3, 3),
            'limit_gb': round(self.max_rss_bytes / 1024 ** 3, 3),
            'limit_triggered': self._limit_triggered,
        }
