"""
MxL Data Retention
==================
Scheduled lifecycle job over the analytical store, relational store, fast
cache and cold archive.

Steps, in order, each isolated from the others:
1. archive   - copy aged, not-yet-archived events to cold storage (when enabled)
2. events    - expire events older than EVENT_TTL_DAYS
3. sessions  - delete sessions ended more than SESSION_RETENTION_DAYS ago
4. cache     - purge expired cache entries

A failing step is logged and reported; later steps still run. Every step is
safe to repeat, and a run that starts while another is in progress is skipped.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from mxl.observability.metrics import MetricsCollector
from mxl.storage.archive import ColdArchive, build_batch
from mxl.storage.cache import TtlCache
from mxl.storage.event_store import AnalyticalStore
from mxl.storage.relational import RelationalStore

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class RetentionReport:
    started_at: str
    skipped: bool = False
    archived_events: int = 0
    archive_batches: List[str] = field(default_factory=list)
    expired_events: int = 0
    deleted_sessions: int = 0
    purged_cache_entries: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.errors

    def to_dict(self) -> Dict:
        return {
            "startedAt": self.started_at,
            "skipped": self.skipped,
            "archivedEvents": self.archived_events,
            "archiveBatches": list(self.archive_batches),
            "expiredEvents": self.expired_events,
            "deletedSessions": self.deleted_sessions,
            "purgedCacheEntries": self.purged_cache_entries,
            "errors": dict(self.errors),
        }


class RetentionService:

    def __init__(
        self,
        store: AnalyticalStore,
        relational: RelationalStore,
        cache: TtlCache,
        archive: Optional[ColdArchive] = None,
        metrics: Optional[MetricsCollector] = None,
        event_ttl_days: int = 90,
        session_retention_days: int = 90,
        archive_after_days: int = 90,
        enable_archiving: bool = False,
        archive_batch_size: int = 5000,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.relational = relational
        self.cache = cache
        self.archive = archive
        self.metrics = metrics or MetricsCollector()
        self.event_ttl_days = event_ttl_days
        self.session_retention_days = session_retention_days
        self.archive_after_days = archive_after_days
        self.enable_archiving = enable_archiving
        self.archive_batch_size = archive_batch_size
        self._clock = clock
        self._running = threading.Lock()
        self.last_report: Optional[RetentionReport] = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ============================================================
    # STEPS
    # ============================================================

    def archive_old_events(self, report: RetentionReport) -> None:
        if not self.enable_archiving or self.archive is None:
            logger.debug("Archiving disabled")
            return
        cutoff = self._now_ms() - self.archive_after_days * DAY_MS
        while True:
            rows = self.store.rows_to_archive(cutoff, self.archive_batch_size)
            batch = build_batch(rows)
            if batch is None:
                break
            self.archive.put(batch)
            self.store.mark_archived([e.event_id for e in rows])
            report.archived_events += batch.row_count
            report.archive_batches.append(batch.key)
            if len(rows) < self.archive_batch_size:
                break

    def expire_events(self, report: RetentionReport) -> None:
        cutoff = self._now_ms() - self.event_ttl_days * DAY_MS
        report.expired_events = self.store.expire_before(cutoff)

    def cleanup_sessions(self, report: RetentionReport) -> None:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        cutoff = now - timedelta(days=self.session_retention_days)
        report.deleted_sessions = self.relational.delete_sessions_ended_before(cutoff)

    def purge_cache(self, report: RetentionReport) -> None:
        report.purged_cache_entries = self.cache.purge_expired()

    # ============================================================
    # RUN
    # ============================================================

    def run(self) -> RetentionReport:
        report = RetentionReport(started_at=datetime.now(timezone.utc).isoformat())
        if not self._running.acquire(blocking=False):
            logger.warning("Retention run already in progress, skipping")
            report.skipped = True
            return report

        try:
            logger.info("Running data retention policies...")
            steps = (
                ("archive", self.archive_old_events),
                ("events", self.expire_events),
                ("sessions", self.cleanup_sessions),
                ("cache", self.purge_cache),
            )
            for name, step in steps:
                try:
                    step(report)
                except Exception as e:
                    logger.error(f"Retention step '{name}' failed: {e}")
                    report.errors[name] = str(e)
                    self.metrics.increment("retention_step_failures_total", {"step": name})

            self.metrics.increment("retention_archived_events_total", amount=report.archived_events)
            self.metrics.increment("retention_expired_events_total", amount=report.expired_events)
            self.metrics.increment("retention_deleted_sessions_total", amount=report.deleted_sessions)
            logger.info(
                f"Data retention completed: archived={report.archived_events} "
                f"expired={report.expired_events} sessions={report.deleted_sessions} "
                f"cache={report.purged_cache_entries} errors={len(report.errors)}"
            )
            self.last_report = report
            return report
        finally:
            self._running.release()

    def stats(self) -> Dict[str, int]:
        """Current counts; any source that cannot be read reports 0."""
        stats = {"telemetryEvents": 0, "sessions": 0, "cacheSize": 0}
        try:
            stats["telemetryEvents"] = self.store.count()
        except Exception as e:
            logger.error(f"Error counting telemetry events: {e}")
        try:
            stats["sessions"] = self.relational.active_session_count()
        except Exception as e:
            logger.error(f"Error counting active sessions: {e}")
        try:
            stats["cacheSize"] = self.cache.size()
        except Exception as e:
            logger.error(f"Error reading cache size: {e}")
        return stats


class RetentionScheduler:
    """Runs RetentionService.run on a fixed interval in a daemon thread."""

    def __init__(self, service: RetentionService, interval_hours: float = 24.0):
        self.service = service
        self.interval_seconds = interval_hours * 3600
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.service.run()
            except Exception as e:
                logger.error(f"Scheduled retention run failed: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="mxl-retention", daemon=True)
        self._thread.start()
        logger.info(f"Retention scheduler started (every {self.interval_seconds / 3600:g}h)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
