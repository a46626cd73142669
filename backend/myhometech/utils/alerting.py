import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "SERVICE_REQUEST_TRANSITION_REJECTED": 25,
    "SERVICE_REQUEST_CONFLICT": 5,
    "RATE_LIMIT_BLOCKED": 20,
}


class AuditAlertTracker:
    """Counts selected events in a sliding window and logs an ALERT line each time a threshold multiple is hit."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, event: str, metadata: Optional[dict] = None) -> bool:
        """Record one occurrence; returns True when this occurrence raised an alert."""
        limit = self._thresholds.get(event)
        if not limit:
            return False
        now = time.monotonic()
        with self._lock:
            window = self._events.setdefault(event, deque())
            self._expire(window, now)
            window.append(now)
            count = len(window)
        if count % limit != 0:
            return False
        logger.warning(
            "ALERT event=%s count=%s window_seconds=%s metadata=%s",
            event,
            count,
            self._window_seconds,
            metadata or {},
        )
        return True

    def count(self, event: str) -> int:
        with self._lock:
            window = self._events.get(event)
            if window is None:
                return 0
            self._expire(window, time.monotonic())
            if not window:
                del self._events[event]
                return 0
            return len(window)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def _expire(self, window: deque, now: float) -> None:
        cutoff = now - self._window_seconds
        while window and window[0] <= cutoff:
            window.popleft()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
