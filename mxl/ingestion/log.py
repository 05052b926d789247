"""
MxL Durable Log
===============
Ordered, partitioned message channel between the ingestion boundary and the
stream processor.

- One logical topic per event type: telemetry-<eventType>
- Partition chosen by a stable hash of the message key (sessionId), so all
  events of a session land in one partition and keep capture order
- Consumer groups track a committed offset per partition; anything after it
  is redelivered (at-least-once)
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from psycopg2.extras import execute_values

from mxl.errors import PipelineErrorCode, TransientInfrastructureError
from mxl.shared.hashing import stable_bucket
from mxl.storage.db import db_cursor, ping as db_ping

logger = logging.getLogger(__name__)

DEAD_LETTER_TOPIC = "telemetry-dead-letter"


@dataclass(frozen=True)
class LogMessage:
    topic: str
    partition: int
    offset: int
    key: str
    value: str

    @property
    def size(self) -> int:
        return len(self.value.encode("utf-8"))


class DurableLog(ABC):

    def __init__(self, num_partitions: int = 8):
        self.num_partitions = num_partitions

    def partition_for(self, key: str) -> int:
        return stable_bucket(key, self.num_partitions)

    def partitions(self, topic: str) -> List[int]:
        if topic == DEAD_LETTER_TOPIC:
            return [0]
        return list(range(self.num_partitions))

    @abstractmethod
    def publish(self, topic: str, messages: Sequence[Tuple[str, str]]) -> List[LogMessage]:
        """Append (key, value) pairs. All-or-nothing per call."""

    @abstractmethod
    def poll(self, group: str, topic: str, partition: int, max_messages: int = 100) -> List[LogMessage]:
        """Messages after the group's committed offset, in offset order."""

    @abstractmethod
    def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        """Mark everything up to and including offset as processed."""

    @abstractmethod
    def committed(self, group: str, topic: str, partition: int) -> int: ...

    @abstractmethod
    def end_offset(self, topic: str, partition: int) -> int: ...

    @abstractmethod
    def ping(self) -> bool: ...

    def lag(self, group: str, topic: str) -> int:
        return sum(
            max(0, self.end_offset(topic, p) - self.committed(group, topic, p))
            for p in self.partitions(topic)
        )


# ============================================================
# IN-MEMORY BACKEND
# ============================================================

class InMemoryLog(DurableLog):
    """Process-local log. Offsets start at 1 per partition; 0 means nothing committed."""

    def __init__(self, num_partitions: int = 8):
        super().__init__(num_partitions)
        self._lock = threading.Lock()
        self._partitions: Dict[Tuple[str, int], List[LogMessage]] = {}
        self._offsets: Dict[Tuple[str, str, int], int] = {}

    def publish(self, topic: str, messages: Sequence[Tuple[str, str]]) -> List[LogMessage]:
        written: List[LogMessage] = []
        with self._lock:
            for key, value in messages:
                partition = 0 if topic == DEAD_LETTER_TOPIC else self.partition_for(key)
                log = self._partitions.setdefault((topic, partition), [])
                message = LogMessage(topic=topic, partition=partition, offset=len(log) + 1, key=key, value=value)
                log.append(message)
                written.append(message)
        return written

    def poll(self, group: str, topic: str, partition: int, max_messages: int = 100) -> List[LogMessage]:
        with self._lock:
            start = self._offsets.get((group, topic, partition), 0)
            log = self._partitions.get((topic, partition), [])
            return list(log[start:start + max_messages])

    def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        with self._lock:
            key = (group, topic, partition)
            self._offsets[key] = max(self._offsets.get(key, 0), offset)

    def committed(self, group: str, topic: str, partition: int) -> int:
        with self._lock:
            return self._offsets.get((group, topic, partition), 0)

    def end_offset(self, topic: str, partition: int) -> int:
        with self._lock:
            return len(self._partitions.get((topic, partition), []))

    def messages(self, topic: str) -> List[LogMessage]:
        with self._lock:
            out: List[LogMessage] = []
            for (t, _), log in sorted(self._partitions.items()):
                if t == topic:
                    out.extend(log)
            return out

    def ping(self) -> bool:
        return True


# ============================================================
# POSTGRES BACKEND
# ============================================================

class PostgresLog(DurableLog):
    """
    telemetry_log rows; offset is the row id.
    Publishers take a per-partition advisory lock so ids become visible in
    order within a partition and consumers never skip a late commit.
    """

    def __init__(self, database_url: str, num_partitions: int = 8):
        super().__init__(num_partitions)
        self.database_url = database_url

    def _cursor(self):
        return db_cursor(self.database_url, PipelineErrorCode.LOG_UNAVAILABLE)

    def publish(self, topic: str, messages: Sequence[Tuple[str, str]]) -> List[LogMessage]:
        if not messages:
            return []
        rows = [
            (topic, 0 if topic == DEAD_LETTER_TOPIC else self.partition_for(key), key, value)
            for key, value in messages
        ]
        with self._cursor() as cur:
            for partition in sorted({r[1] for r in rows}):
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{topic}:{partition}",))
            returned = execute_values(
                cur,
                "INSERT INTO telemetry_log (topic, partition, message_key, value) VALUES %s "
                "RETURNING id, topic, partition, message_key, value",
                rows,
                fetch=True,
            )
        return [
            LogMessage(topic=r["topic"], partition=r["partition"], offset=r["id"], key=r["message_key"], value=r["value"])
            for r in returned
        ]

    def poll(self, group: str, topic: str, partition: int, max_messages: int = 100) -> List[LogMessage]:
        with self._cursor() as cur:
            cur.execute("""
                SELECT l.id, l.topic, l.partition, l.message_key, l.value
                FROM telemetry_log l
                WHERE l.topic = %s AND l.partition = %s
                  AND l.id > COALESCE((
                      SELECT committed_offset FROM telemetry_log_offsets
                      WHERE group_id = %s AND topic = %s AND partition = %s
                  ), 0)
                ORDER BY l.id
                LIMIT %s
            """, (topic, partition, group, topic, partition, max_messages))
            return [
                LogMessage(topic=r["topic"], partition=r["partition"], offset=r["id"], key=r["message_key"], value=r["value"])
                for r in cur.fetchall()
            ]

    def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        with self._cursor() as cur:
            cur.execute("""
                INSERT INTO telemetry_log_offsets (group_id, topic, partition, committed_offset)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (group_id, topic, partition) DO UPDATE SET
                    committed_offset = GREATEST(telemetry_log_offsets.committed_offset, EXCLUDED.committed_offset),
                    updated_at = NOW()
            """, (group, topic, partition, offset))

    def committed(self, group: str, topic: str, partition: int) -> int:
        with self._cursor() as cur:
            cur.execute("""
                SELECT committed_offset FROM telemetry_log_offsets
                WHERE group_id = %s AND topic = %s AND partition = %s
            """, (group, topic, partition))
            row = cur.fetchone()
            return int(row["committed_offset"]) if row else 0

    def end_offset(self, topic: str, partition: int) -> int:
        with self._cursor() as cur:
            cur.execute(
                "SELECT COALESCE(MAX(id), 0) AS end_offset FROM telemetry_log WHERE topic = %s AND partition = %s",
                (topic, partition),
            )
            row = cur.fetchone()
            return int(row["end_offset"]) if row else 0

    def lag(self, group: str, topic: str) -> int:
        with self._cursor() as cur:
            cur.execute("""
                SELECT COUNT(*) AS lag
                FROM telemetry_log l
                LEFT JOIN telemetry_log_offsets o
                  ON o.group_id = %s AND o.topic = l.topic AND o.partition = l.partition
                WHERE l.topic = %s AND l.id > COALESCE(o.committed_offset, 0)
            """, (group, topic))
            row = cur.fetchone()
            return int(row["lag"]) if row else 0

    def ping(self) -> bool:
        return db_ping(self.database_url)


def publish_or_raise(log: DurableLog, topic: str, messages: Sequence[Tuple[str, str]]) -> List[LogMessage]:
    """Publish, converting any backend failure into a transient error for the caller."""
    try:
        return log.publish(topic, messages)
    except TransientInfrastructureError:
        raise
    except Exception as e:
        logger.error(f"Publish to {topic} failed: {e}")
        raise TransientInfrastructureError(PipelineErrorCode.LOG_UNAVAILABLE, f"Log unavailable: {e}")
