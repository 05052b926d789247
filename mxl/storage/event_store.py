"""
MxL Analytical Store
====================
Durable, append-heavy storage for processed events.

Two backends share one interface:
- InMemoryAnalyticalStore: local development and tests
- PostgresAnalyticalStore: JSONB rows in telemetry_events

Rows are never updated except by GDPR anonymization and the archival marker.
Duplicate rows from at-least-once delivery are accepted; content_hash is
stored so readers can collapse them.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List

from psycopg2.extras import execute_values

from mxl.storage.db import db_cursor, ping as db_ping
from mxl.telemetry.models import ProcessedEvent

logger = logging.getLogger(__name__)


@dataclass
class MetricAggregate:
    """Sum and sample count of one metric over a time range."""
    event_type: str
    metric_name: str
    start_ms: int
    end_ms: int
    total: float = 0.0
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type,
            "metricName": self.metric_name,
            "start": self.start_ms,
            "end": self.end_ms,
            "total": self.total,
            "count": self.count,
        }


class AnalyticalStore(ABC):
    """Interface for the analytical store."""

    @abstractmethod
    def insert(self, event: ProcessedEvent) -> None: ...

    @abstractmethod
    def insert_batch(self, events: List[ProcessedEvent]) -> int:
        """Write all events in one round trip. Returns rows written."""

    @abstractmethod
    def session_events(self, session_id: str, limit: int = 1000) -> List[ProcessedEvent]: ...

    @abstractmethod
    def events_for_user(self, user_id: str, limit: int = 10000) -> List[ProcessedEvent]: ...

    @abstractmethod
    def delete_user(self, user_id: str) -> int: ...

    @abstractmethod
    def anonymize_user(self, user_id: str, anonymous_id: str) -> int: ...

    @abstractmethod
    def rows_to_archive(self, cutoff_ms: int, limit: int) -> List[ProcessedEvent]:
        """Rows older than cutoff (by server time) not archived yet, oldest first."""

    @abstractmethod
    def mark_archived(self, event_ids: List[str]) -> int: ...

    @abstractmethod
    def aggregate_metric(self, event_type: str, metric_name: str, start_ms: int, end_ms: int) -> MetricAggregate:
        """Sum one per-event metric over events whose client timestamp is in [start_ms, end_ms]."""

    @abstractmethod
    def expire_before(self, cutoff_ms: int) -> int:
        """Delete rows whose server timestamp is older than cutoff."""

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def ping(self) -> bool: ...


# ============================================================
# IN-MEMORY BACKEND
# ============================================================

class InMemoryAnalyticalStore(AnalyticalStore):
    """Thread-safe dict-backed store. `write_calls` counts round trips."""

    def __init__(self):
        self._rows: Dict[str, ProcessedEvent] = {}
        self._archived: Dict[str, bool] = {}
        self._lock = threading.Lock()
        self.write_calls = 0

    def insert(self, event: ProcessedEvent) -> None:
        with self._lock:
            self.write_calls += 1
            self._rows[event.event_id] = event
            self._archived[event.event_id] = False

    def insert_batch(self, events: List[ProcessedEvent]) -> int:
        if not events:
            return 0
        with self._lock:
            self.write_calls += 1
            for event in events:
                self._rows[event.event_id] = event
                self._archived[event.event_id] = False
        return len(events)

    def all_events(self) -> List[ProcessedEvent]:
        with self._lock:
            return sorted(self._rows.values(), key=lambda e: (e.server_timestamp, e.timestamp))

    def session_events(self, session_id: str, limit: int = 1000) -> List[ProcessedEvent]:
        rows = [e for e in self.all_events() if e.session_id == session_id]
        return sorted(rows, key=lambda e: e.timestamp)[:limit]

    def events_for_user(self, user_id: str, limit: int = 10000) -> List[ProcessedEvent]:
        rows = [e for e in self.all_events() if e.user_id == user_id]
        return sorted(rows, key=lambda e: e.timestamp, reverse=True)[:limit]

    def delete_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [k for k, e in self._rows.items() if e.user_id == user_id]
            for k in doomed:
                del self._rows[k]
                self._archived.pop(k, None)
        return len(doomed)

    def anonymize_user(self, user_id: str, anonymous_id: str) -> int:
        with self._lock:
            hits = [k for k, e in self._rows.items() if e.user_id == user_id]
            for k in hits:
                self._rows[k] = self._rows[k].model_copy(update={"user_id": anonymous_id})
        return len(hits)

    def rows_to_archive(self, cutoff_ms: int, limit: int) -> List[ProcessedEvent]:
        with self._lock:
            rows = [
                e for k, e in self._rows.items()
                if e.server_timestamp < cutoff_ms and not self._archived.get(k)
            ]
        return sorted(rows, key=lambda e: e.server_timestamp)[:limit]

    def aggregate_metric(self, event_type: str, metric_name: str, start_ms: int, end_ms: int) -> MetricAggregate:
        result = MetricAggregate(event_type, metric_name, start_ms, end_ms)
        with self._lock:
            for e in self._rows.values():
                if e.event_type != event_type or metric_name not in e.metrics:
                    continue
                if start_ms <= e.timestamp <= end_ms:
                    result.total += e.metrics[metric_name]
                    result.count += 1
        return result

    def mark_archived(self, event_ids: List[str]) -> int:
        marked = 0
        with self._lock:
            for event_id in event_ids:
                if event_id in self._rows and not self._archived.get(event_id):
                    self._archived[event_id] = True
                    marked += 1
        return marked

    def expire_before(self, cutoff_ms: int) -> int:
        with self._lock:
            doomed = [k for k, e in self._rows.items() if e.server_timestamp < cutoff_ms]
            for k in doomed:
                del self._rows[k]
                self._archived.pop(k, None)
        return len(doomed)

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def ping(self) -> bool:
        return True


# ============================================================
# POSTGRES BACKEND
# ============================================================

_COLUMNS = (
    "event_id, session_id, user_id, event_type, timestamp, server_timestamp, "
    "data, device_info, enriched, metrics, content_hash"
)


def _to_row(event: ProcessedEvent) -> tuple:
    wire = event.model_dump(by_alias=True, mode="json")
    return (
        event.event_id,
        event.session_id,
        event.user_id,
        event.event_type,
        event.timestamp,
        event.server_timestamp,
        json.dumps(wire["data"]),
        json.dumps(wire["deviceInfo"]),
        json.dumps(wire["enriched"]),
        json.dumps(wire["metrics"]),
        event.content_hash,
    )


def _from_row(row: Dict) -> ProcessedEvent:
    return ProcessedEvent.model_validate({
        "eventId": str(row["event_id"]),
        "sessionId": row["session_id"],
        "userId": row.get("user_id"),
        "eventType": row["event_type"],
        "timestamp": row["timestamp"],
        "serverTimestamp": row["server_timestamp"],
        "data": row["data"] or {},
        "deviceInfo": row["device_info"],
        "enriched": row["enriched"] or {},
        "metrics": row["metrics"] or {},
        "contentHash": row.get("content_hash") or "",
    })


class PostgresAnalyticalStore(AnalyticalStore):
    """telemetry_events table. Each public call is one transaction."""

    def __init__(self, database_url: str):
        self.database_url = database_url

    def insert(self, event: ProcessedEvent) -> None:
        with db_cursor(self.database_url) as cur:
            cur.execute(
                f"INSERT INTO telemetry_events ({_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                _to_row(event),
            )

    def insert_batch(self, events: List[ProcessedEvent]) -> int:
        if not events:
            return 0
        with db_cursor(self.database_url) as cur:
            execute_values(
                cur,
                f"INSERT INTO telemetry_events ({_COLUMNS}) VALUES %s",
                [_to_row(e) for e in events],
            )
        return len(events)

    def session_events(self, session_id: str, limit: int = 1000) -> List[ProcessedEvent]:
        with db_cursor(self.database_url) as cur:
            cur.execute(f"""
                SELECT {_COLUMNS} FROM telemetry_events
                WHERE session_id = %s
                ORDER BY timestamp ASC
                LIMIT %s
            """, (session_id, limit))
            return [_from_row(r) for r in cur.fetchall()]

    def events_for_user(self, user_id: str, limit: int = 10000) -> List[ProcessedEvent]:
        with db_cursor(self.database_url) as cur:
            cur.execute(f"""
                SELECT {_COLUMNS} FROM telemetry_events
                WHERE user_id = %s
                ORDER BY timestamp DESC
                LIMIT %s
            """, (user_id, limit))
            return [_from_row(r) for r in cur.fetchall()]

    def delete_user(self, user_id: str) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("DELETE FROM telemetry_events WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def anonymize_user(self, user_id: str, anonymous_id: str) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute(
                "UPDATE telemetry_events SET user_id = %s WHERE user_id = %s",
                (anonymous_id, user_id),
            )
            return cur.rowcount

    def rows_to_archive(self, cutoff_ms: int, limit: int) -> List[ProcessedEvent]:
        with db_cursor(self.database_url) as cur:
            cur.execute(f"""
                SELECT {_COLUMNS} FROM telemetry_events
                WHERE server_timestamp < %s AND archived_at IS NULL
                ORDER BY server_timestamp ASC
                LIMIT %s
            """, (cutoff_ms, limit))
            return [_from_row(r) for r in cur.fetchall()]

    def aggregate_metric(self, event_type: str, metric_name: str, start_ms: int, end_ms: int) -> MetricAggregate:
        with db_cursor(self.database_url) as cur:
            cur.execute("""
                SELECT COALESCE(SUM((metrics->>%s)::double precision), 0) AS total, COUNT(*) AS n
                FROM telemetry_events
                WHERE event_type = %s AND metrics ? %s
                  AND timestamp BETWEEN %s AND %s
            """, (metric_name, event_type, metric_name, start_ms, end_ms))
            row = cur.fetchone()
        return MetricAggregate(
            event_type, metric_name, start_ms, end_ms,
            total=float(row["total"]) if row else 0.0,
            count=int(row["n"]) if row else 0,
        )

    def mark_archived(self, event_ids: List[str]) -> int:
        if not event_ids:
            return 0
        with db_cursor(self.database_url) as cur:
            cur.execute("""
                UPDATE telemetry_events SET archived_at = NOW()
                WHERE event_id = ANY(%s::uuid[]) AND archived_at IS NULL
            """, (list(event_ids),))
            return cur.rowcount

    def expire_before(self, cutoff_ms: int) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("DELETE FROM telemetry_events WHERE server_timestamp < %s", (cutoff_ms,))
            return cur.rowcount

    def count(self) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("SELECT COUNT(*) AS n FROM telemetry_events")
            row = cur.fetchone()
            return int(row["n"]) if row else 0

    def ping(self) -> bool:
        return db_ping(self.database_url)
