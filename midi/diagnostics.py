"""Message counters and system diagnostics for the bridge."""

import time
import platform
import sys
import psutil
import logging
from collections import deque
from typing import Any, Deque, Dict, Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


@dataclass
class SystemMetrics:
    """System resource metrics."""
    cpu_percent: float
    memory_percent: float
    timestamp: float


class Diagnostics:
    """Counts received and sent messages and samples system load.

    Timestamps for the rates are kept only for the rate window and are
    trimmed on every record.
    """

    def __init__(self, window: float = RATE_WINDOW_SECONDS):
        self._window = window
        self._received_times: Deque[float] = deque()
        self._sent_times: Deque[float] = deque()
        self._start_time = time.time()
        self.messages_received = 0
        self.messages_sent = 0

    def record_received(self) -> None:
        self.messages_received += 1
        self._record(self._received_times)

    def record_sent(self) -> None:
        self.messages_sent += 1
        self._record(self._sent_times)

    def reset(self) -> None:
        """Zero the counters and rates; uptime keeps running."""
        self.messages_received = 0
        self.messages_sent = 0
        self._received_times.clear()
        self._sent_times.clear()

    def _record(self, times: Deque[float]) -> None:
        now = time.time()
        times.append(now)
        self._trim(times, now)

    def _trim(self, times: Deque[float], now: float) -> None:
        cutoff = now - self._window
        while times and times[0] < cutoff:
            times.popleft()

    def _rate(self, times: Deque[float]) -> float:
        self._trim(times, time.time())
        return len(times) / self._window

    def collect_system_metrics(self) -> Optional[SystemMetrics]:
        """Sample CPU and memory usage; None if psutil fails."""
        try:
            return SystemMetrics(
                cpu_percent=psutil.cpu_percent(),
                memory_percent=psutil.virtual_memory().percent,
                timestamp=time.time(),
            )
        except Exception as e:
            logger.error(f"Error collecting system metrics: {e}")
            return None

    def get_system_info(self) -> Dict[str, Any]:
        return {
            "os": platform.system(),
            "python_version": sys.version.split()[0],
            "cpu_count": psutil.cpu_count(),
            "total_memory": psutil.virtual_memory().total,
        }

    def get_performance_report(self, error_rate: float = 0.0, queue_size: int = 0) -> Dict[str, Any]:
        """Rates are per second over the window; error_rate is passed through."""
        system = self.collect_system_metrics()
        return {
            "uptime_seconds": time.time() - self._start_time,
            "receive_rate": self._rate(self._received_times),
            "send_rate": self._rate(self._sent_times),
            "error_rate": error_rate,
            "press_queue": queue_size,
            "system_load": {
                "cpu": system.cpu_percent if system else None,
                "memory": system.memory_percent if system else None,
            },
        }
