"""
MxL Client Durable Queue
========================
Per-device store of captured events with upload state, on sqlite3.

Invariants:
- enqueue is safe under concurrent callers; every record is committed before
  enqueue returns
- uploaded only moves false -> true, and only for the exact records of a batch
  the server acknowledged; the marking is one transaction
- upload_attempts increments only when an upload of that record failed
- at most one flush is in flight; a concurrent trigger is a no-op that
  reports skipped
- flush picks the oldest pending records (created_at, then id)

Retries are unbounded per record. Local storage is bounded by evicting the
oldest pending records, and uploaded records are purged after the retention
window measured from creation.
"""

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mxl.client.uploader import UploadResult
from mxl.privacy.redaction import redact_structured
from mxl.telemetry.models import TelemetryEvent

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

SCHEMA = """
CREATE TABLE IF NOT EXISTS queue_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    user_id TEXT,
    event_type TEXT NOT NULL,
    event TEXT NOT NULL,
    uploaded INTEGER NOT NULL DEFAULT 0,
    upload_attempts INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    size_bytes INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_pending ON queue_records(uploaded, created_at, id);
CREATE INDEX IF NOT EXISTS idx_queue_user ON queue_records(user_id);
"""


@dataclass
class QueueRecord:
    id: int
    event: Dict[str, Any]
    uploaded: bool
    upload_attempts: int
    created_at: int
    size_bytes: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueueRecord":
        return cls(
            id=row["id"],
            event=json.loads(row["event"]),
            uploaded=bool(row["uploaded"]),
            upload_attempts=row["upload_attempts"],
            created_at=row["created_at"],
            size_bytes=row["size_bytes"],
        )


@dataclass
class FlushResult:
    attempted: int = 0
    uploaded: int = 0
    skipped: bool = False
    error: Optional[str] = None
    record_ids: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.skipped and self.error is None


class DurableQueue:

    def __init__(
        self,
        path: str,
        uploader,
        batch_size: int = 50,
        max_storage_bytes: int = 10 * 1024 * 1024,
        retention_days: int = 7,
        redact_before_store: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path
        self.uploader = uploader
        self.batch_size = batch_size
        self.max_storage_bytes = max_storage_bytes
        self.retention_days = retention_days
        self.redact_before_store = redact_before_store
        self._clock = clock
        self._db_lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        with self._db_lock:
            self._conn.executescript(SCHEMA)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def close(self) -> None:
        with self._db_lock:
            self._conn.close()

    # ============================================================
    # CAPTURE
    # ============================================================

    def enqueue(self, event: TelemetryEvent) -> int:
        """Persist one event. Triggers a background flush once a batch is pending."""
        wire = event.to_wire()
        if self.redact_before_store:
            wire["data"] = redact_structured(wire.get("data", {}))
        payload = json.dumps(wire, separators=(",", ":"))
        with self._db_lock:
            cur = self._conn.execute(
                "INSERT INTO queue_records (session_id, user_id, event_type, event, created_at, size_bytes) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (event.session_id, event.user_id, event.event_type, payload, self._now_ms(), len(payload.encode("utf-8"))),
            )
            record_id = cur.lastrowid
            pending = self.pending_count()

        if pending >= self.batch_size:
            self.request_flush()
        return record_id

    # ============================================================
    # FLUSH
    # ============================================================

    def _oldest_pending(self, limit: int) -> List[QueueRecord]:
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT * FROM queue_records WHERE uploaded = 0 ORDER BY created_at ASC, id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [QueueRecord.from_row(r) for r in rows]

    def _mark_uploaded(self, ids: List[int]) -> int:
        placeholders = ",".join("?" for _ in ids)
        with self._db_lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                cur = self._conn.execute(
                    f"UPDATE queue_records SET uploaded = 1 WHERE uploaded = 0 AND id IN ({placeholders})",
                    ids,
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
        return cur.rowcount

    def _count_attempt(self, ids: List[int]) -> None:
        placeholders = ",".join("?" for _ in ids)
        with self._db_lock:
            self._conn.execute(
                f"UPDATE queue_records SET upload_attempts = upload_attempts + 1 WHERE uploaded = 0 AND id IN ({placeholders})",
                ids,
            )

    def flush(self) -> FlushResult:
        """Upload the oldest pending batch. Concurrent calls are coalesced."""
        if not self._flush_lock.acquire(blocking=False):
            logger.debug("Flush already in progress, skipping")
            return FlushResult(skipped=True)

        try:
            records = self._oldest_pending(self.batch_size)
            if not records:
                return FlushResult()
            ids = [r.id for r in records]
            result = FlushResult(attempted=len(records), record_ids=ids)

            try:
                upload: UploadResult = self.uploader.upload([r.event for r in records])
            except Exception as e:
                upload = UploadResult(success=False, error=str(e))

            if upload.success:
                result.uploaded = self._mark_uploaded(ids)
                logger.debug(f"Uploaded {result.uploaded} events")
            else:
                self._count_attempt(ids)
                result.error = upload.error or f"HTTP {upload.status_code}"
                logger.warning(f"Failed to upload events: {result.error}")
            return result
        finally:
            self._flush_lock.release()

    def request_flush(self) -> bool:
        """Start a flush on a background thread unless one is already running."""
        if self._flush_lock.locked():
            return False
        threading.Thread(target=self._flush_safely, name="mxl-flush", daemon=True).start()
        return True

    def _flush_safely(self) -> None:
        try:
            self.flush()
        except Exception as e:
            logger.error(f"Error flushing events: {e}")

    # ============================================================
    # HOUSEKEEPING
    # ============================================================

    def enforce_storage_limits(self) -> int:
        """Delete the oldest pending records until pending size fits the limit."""
        deleted = 0
        with self._db_lock:
            total = self.pending_size()
            if total <= self.max_storage_bytes:
                return 0
            rows = self._conn.execute(
                "SELECT id, size_bytes FROM queue_records WHERE uploaded = 0 ORDER BY created_at ASC, id ASC"
            ).fetchall()
            doomed: List[int] = []
            for row in rows:
                if total <= self.max_storage_bytes:
                    break
                doomed.append(row["id"])
                total -= row["size_bytes"]
            for start in range(0, len(doomed), 500):
                chunk = doomed[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                cur = self._conn.execute(f"DELETE FROM queue_records WHERE id IN ({placeholders})", chunk)
                deleted += cur.rowcount
        if deleted:
            logger.warning(f"Offline storage limit exceeded, dropped {deleted} oldest pending events")
        return deleted

    def purge_uploaded(self) -> int:
        """Remove uploaded records created before the retention window."""
        cutoff = self._now_ms() - self.retention_days * DAY_MS
        with self._db_lock:
            cur = self._conn.execute(
                "DELETE FROM queue_records WHERE uploaded = 1 AND created_at < ?",
                (cutoff,),
            )
        if cur.rowcount:
            logger.debug(f"Purged {cur.rowcount} uploaded events")
        return cur.rowcount

    def pending_count(self) -> int:
        with self._db_lock:
            return self._conn.execute("SELECT COUNT(*) FROM queue_records WHERE uploaded = 0").fetchone()[0]

    def pending_size(self) -> int:
        with self._db_lock:
            return self._conn.execute(
                "SELECT COALESCE(SUM(size_bytes), 0) FROM queue_records WHERE uploaded = 0"
            ).fetchone()[0]

    def records(self, uploaded: Optional[bool] = None) -> List[QueueRecord]:
        query = "SELECT * FROM queue_records"
        params: tuple = ()
        if uploaded is not None:
            query += " WHERE uploaded = ?"
            params = (1 if uploaded else 0,)
        with self._db_lock:
            rows = self._conn.execute(query + " ORDER BY created_at ASC, id ASC", params).fetchall()
        return [QueueRecord.from_row(r) for r in rows]

    # ============================================================
    # GDPR
    # ============================================================

    def delete_user_records(self, user_id: str) -> int:
        with self._db_lock:
            cur = self._conn.execute("DELETE FROM queue_records WHERE user_id = ?", (user_id,))
        return cur.rowcount

    def anonymize_user_records(self, user_id: str, anonymous_id: str) -> int:
        with self._db_lock:
            rows = self._conn.execute(
                "SELECT id, event FROM queue_records WHERE user_id = ?", (user_id,)
            ).fetchall()
            for row in rows:
                event = json.loads(row["event"])
                event["userId"] = anonymous_id
                payload = json.dumps(event, separators=(",", ":"))
                self._conn.execute(
                    "UPDATE queue_records SET user_id = ?, event = ?, size_bytes = ? WHERE id = ?",
                    (anonymous_id, payload, len(payload.encode("utf-8")), row["id"]),
                )
        return len(rows)
