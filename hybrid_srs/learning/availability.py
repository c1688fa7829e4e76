"""
Availability monitor for the enhanced prediction path.

Keeps a sliding window of recent call outcomes. When too many of them failed
the monitor opens and the engine runs on SM-2 alone; after a recovery period
it closes again and lets the next call probe the enhanced path.
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Dict, Optional

from hybrid_srs.common.logger import app_logger

logger = app_logger.getChild("learning.availability")


class AvailabilityMonitor:
    """Sliding-window failure counter with timed recovery."""

    def __init__(
        self,
        window: int = 5,
        failure_threshold: int = 3,
        recovery_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            window: Number of recent outcomes considered
            failure_threshold: Failures within the window that open the monitor
            recovery_seconds: Time after opening before the path is probed again
            clock: Monotonic time source
        """
        self.window = window
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._outcomes = deque(maxlen=window)
        self._opened_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, bridge_config: Any) -> 'AvailabilityMonitor':
        return cls(
            window=bridge_config.health_window,
            failure_threshold=bridge_config.failure_threshold,
            recovery_seconds=bridge_config.recovery_seconds
        )

    def is_available(self) -> bool:
        with self._lock:
            if self._opened_at is None:
                return True
            if self._clock() - self._opened_at >= self.recovery_seconds:
                logger.info("Enhanced prediction path re-enabled after recovery period")
                self._opened_at = None
                self._outcomes.clear()
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._outcomes.append(True)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        with self._lock:
            self._outcomes.append(False)
            if error is not None:
                self._last_error = str(error) or type(error).__name__
            failures = sum(1 for ok in self._outcomes if not ok)
            if self._opened_at is None and failures >= self.failure_threshold:
                self._opened_at = self._clock()
                logger.warning(
                    f"Enhanced prediction path disabled: {failures} failures "
                    f"in last {len(self._outcomes)} calls"
                )

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._opened_at = None
            self._last_error = None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "open": self._opened_at is not None,
                "recent_calls": len(self._outcomes),
                "recent_failures": sum(1 for ok in self._outcomes if not ok),
                "last_error": self._last_error
            }
