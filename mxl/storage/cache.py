"""
MxL Fast Cache
Short-TTL key/value store for recent-session lookups and real-time counters.

TtlCache keeps redis-like semantics (setex, incr, expire, lpush/lrange) in
process memory. Expired keys are dropped lazily on access and in bulk by
purge_expired(), which the retention job calls.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from mxl.telemetry.models import ProcessedEvent

logger = logging.getLogger(__name__)


class TtlCache:
    """Thread-safe in-process cache with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}
        self._lock = threading.RLock()

    # ----- internals -----

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._data

    def _set(self, key: str, value: Any, ttl_seconds: Optional[float]) -> None:
        self._data[key] = value
        if ttl_seconds is None:
            self._expires.pop(key, None)
        else:
            self._expires[key] = self._clock() + ttl_seconds

    # ----- key/value -----

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._set(key, value, ttl_seconds)

    def set_many(self, items: Iterable[Tuple[str, Any]], ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            for key, value in items:
                self._set(key, value, ttl_seconds)

    def get(self, key: str) -> Any:
        with self._lock:
            return self._data.get(key) if self._alive(key) else None

    def mget(self, keys: Iterable[str]) -> List[Any]:
        with self._lock:
            return [self._data.get(k) if self._alive(k) else None for k in keys]

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if key in self._data:
                    removed += 1
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return removed

    def incr(self, key: str, amount: int = 1) -> int:
        with self._lock:
            current = self._data.get(key, 0) if self._alive(key) else 0
            value = int(current) + amount
            self._data[key] = value
            return value

    def expire(self, key: str, ttl_seconds: float) -> bool:
        with self._lock:
            if not self._alive(key):
                return False
            self._expires[key] = self._clock() + ttl_seconds
            return True

    def ttl(self, key: str) -> Optional[float]:
        with self._lock:
            if not self._alive(key):
                return None
            deadline = self._expires.get(key)
            return None if deadline is None else deadline - self._clock()

    # ----- lists -----

    def lpush(self, key: str, *values: Any) -> int:
        with self._lock:
            current = self._data.get(key) if self._alive(key) else None
            items = list(current) if isinstance(current, list) else []
            for value in values:
                items.insert(0, value)
            self._data[key] = items
            return len(items)

    def lrange(self, key: str, start: int, stop: int) -> List[Any]:
        """Inclusive stop, negative indexes count from the end."""
        with self._lock:
            items = self._data.get(key) if self._alive(key) else None
            if not isinstance(items, list):
                return []
            end = len(items) if stop == -1 else stop + 1
            return list(items[start:end])

    def ltrim(self, key: str, start: int, stop: int) -> None:
        """Keep only items[start..stop], inclusive."""
        with self._lock:
            items = self._data.get(key) if self._alive(key) else None
            if not isinstance(items, list):
                return
            end = len(items) if stop == -1 else stop + 1
            self._data[key] = items[start:end]

    # ----- maintenance -----

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._alive(k)]

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, deadline in self._expires.items() if deadline <= now]
            for key in expired:
                self._data.pop(key, None)
                self._expires.pop(key, None)
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def ping(self) -> bool:
        return True


class SessionEventCache:
    """
    Recent processed events per session for live-session queries.
    event:<sessionId>:<eventId> holds the event JSON; session:<sessionId>:events
    lists the event keys newest first, capped at max_events per session.
    """

    def __init__(self, cache: TtlCache, ttl_seconds: int = 86400, max_events: int = 1000):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_events = max_events

    @staticmethod
    def _event_key(session_id: str, event_id: str) -> str:
        return f"event:{session_id}:{event_id}"

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}:events"

    def cache_event(self, event: ProcessedEvent) -> None:
        self.cache_batch([event])

    def cache_batch(self, events: List[ProcessedEvent]) -> None:
        if not events:
            return
        items = [
            (self._event_key(e.session_id, e.event_id), json.dumps(e.model_dump(by_alias=True, mode="json")))
            for e in events
        ]
        self.cache.set_many(items, self.ttl_seconds)
        for event, (key, _) in zip(events, items):
            session_key = self._session_key(event.session_id)
            if self.cache.lpush(session_key, key) > self.max_events:
                dropped = self.cache.lrange(session_key, self.max_events, -1)
                self.cache.ltrim(session_key, 0, self.max_events - 1)
                self.cache.delete(*dropped)
            self.cache.expire(session_key, self.ttl_seconds)

    def cached_event(self, session_id: str, event_id: str) -> Optional[ProcessedEvent]:
        raw = self.cache.get(self._event_key(session_id, event_id))
        if raw is None:
            return None
        return ProcessedEvent.model_validate(json.loads(raw))

    def session_events(self, session_id: str, limit: int = 100) -> List[ProcessedEvent]:
        keys = self.cache.lrange(self._session_key(session_id), 0, limit - 1)
        if not keys:
            return []
        return [
            ProcessedEvent.model_validate(json.loads(raw))
            for raw in self.cache.mget(keys)
            if raw is not None
        ]

    def forget_session(self, session_id: str) -> int:
        session_key = self._session_key(session_id)
        keys = self.cache.lrange(session_key, 0, -1)
        return self.cache.delete(session_key, *keys)
