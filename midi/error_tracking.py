"""Error tracking for bridge operations."""

import time
from collections import deque
from typing import Deque, Dict, List, NamedTuple, Optional
import logging

logger = logging.getLogger(__name__)

# Error sources
SOURCE_MIDI = "midi"
SOURCE_OSC = "osc"
SOURCE_PRESS = "press"
SOURCE_CONFIG = "config"


class ErrorEntry(NamedTuple):
    """Error entry with timestamp and context."""
    timestamp: float
    source: str
    message: str
    details: Optional[str] = None


class ErrorTracker:
    """Counts transport and processing errors.

    ``total`` only decreases through reset(); it is the error counter
    shown in status. History is bounded and only used for rates and display.
    """

    def __init__(self, max_history: int = 100, window_seconds: float = 300):
        self._history: Deque[ErrorEntry] = deque(maxlen=max_history)
        self._source_counts: Dict[str, int] = {}
        self._window_seconds = window_seconds
        self.total = 0

    def add_error(self, source: str, message: str, details: Optional[str] = None) -> None:
        """Record an error and log it."""
        self._history.append(ErrorEntry(time.time(), source, message, details))
        self._source_counts[source] = self._source_counts.get(source, 0) + 1
        self.total += 1

        if details:
            logger.error(f"{source}: {message} - {details}")
        else:
            logger.error(f"{source}: {message}")

    def count(self, source: Optional[str] = None) -> int:
        if source is None:
            return self.total
        return self._source_counts.get(source, 0)

    def get_recent_errors(self, seconds: Optional[float] = None) -> List[ErrorEntry]:
        """Get errors from the last N seconds."""
        if not seconds:
            seconds = self._window_seconds
        cutoff = time.time() - seconds
        return [e for e in self._history if e.timestamp >= cutoff]

    def get_error_rate(self, source: str) -> float:
        """Get error rate (errors/minute) for a source."""
        source_errors = [e for e in self.get_recent_errors() if e.source == source]
        if not source_errors:
            return 0.0
        window = min(self._window_seconds, time.time() - source_errors[0].timestamp)
        return len(source_errors) * 60 / window if window > 0 else 0.0

    def last_error(self) -> Optional[ErrorEntry]:
        return self._history[-1] if self._history else None

    def summary(self) -> Dict[str, int]:
        return dict(self._source_counts, total=self.total)

    def reset(self) -> None:
        """Clear history and counts, including the total."""
        self._history.clear()
        self._source_counts.clear()
        self.total = 0
