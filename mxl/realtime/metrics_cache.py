"""
MxL Real-time Metrics Cache
Per-event-type, per-second counters with a short TTL, read by dashboards and
alerting. Keys: metrics:<eventType>:<epochSecond>.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Optional

from mxl.storage.cache import TtlCache
from mxl.telemetry.models import EventType

logger = logging.getLogger(__name__)


class RealtimeMetrics:

    def __init__(
        self,
        cache: TtlCache,
        ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def key(event_type: str, second: int) -> str:
        return f"metrics:{event_type}:{second}"

    def _now_second(self) -> int:
        return int(self._clock())

    def record(self, event_type: str, at_second: Optional[int] = None, amount: int = 1) -> int:
        """Increment the counter for the current (or given) second."""
        second = self._now_second() if at_second is None else at_second
        key = self.key(event_type, second)
        value = self.cache.incr(key, amount)
        self.cache.expire(key, self.ttl_seconds)
        return value

    def count(self, event_type: str, second: int) -> int:
        value = self.cache.get(self.key(event_type, second))
        return int(value) if value is not None else 0

    def total(self, event_type: str, window_seconds: int = 60) -> int:
        """Events of one type over the trailing window, current second included."""
        now = self._now_second()
        return sum(self.count(event_type, s) for s in range(now - window_seconds + 1, now + 1))

    def rate(self, event_type: str, window_seconds: int = 60) -> float:
        """Events per second over the trailing window."""
        if window_seconds <= 0:
            return 0.0
        return self.total(event_type, window_seconds) / float(window_seconds)

    def snapshot(
        self,
        window_seconds: int = 60,
        event_types: Optional[Iterable[str]] = None,
    ) -> Dict[str, Dict[str, float]]:
        types = list(event_types) if event_types is not None else [t.value for t in EventType]
        return {
            t: {
                "total": float(self.total(t, window_seconds)),
                "perSecond": self.rate(t, window_seconds),
            }
            for t in types
        }
