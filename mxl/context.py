"""
MxL Pipeline Context
Wires the server-side components together from Settings.

DATABASE_URL set   -> PostgreSQL log, analytical store and relational store
DATABASE_URL empty -> in-memory backends (single process)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from mxl.config import Settings
from mxl.gdpr.hooks import GdprHooks
from mxl.ingestion.log import DurableLog, InMemoryLog, PostgresLog
from mxl.ingestion.service import IngestionService
from mxl.observability.metrics import MetricsCollector
from mxl.processing.consumer import ConsumerGroupRunner
from mxl.processing.enricher import EventEnricher, GeoLocator
from mxl.processing.processor import StreamProcessor
from mxl.realtime.metrics_cache import RealtimeMetrics
from mxl.retention.service import RetentionScheduler, RetentionService
from mxl.storage.archive import ColdArchive, FilesystemArchive
from mxl.storage.cache import SessionEventCache, TtlCache
from mxl.storage.event_store import AnalyticalStore, InMemoryAnalyticalStore, PostgresAnalyticalStore
from mxl.storage.migration import run_migration
from mxl.storage.relational import InMemoryRelationalStore, PostgresRelationalStore, RelationalStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    log: DurableLog
    store: AnalyticalStore
    relational: RelationalStore
    cache: TtlCache
    session_cache: SessionEventCache
    realtime: RealtimeMetrics
    metrics: MetricsCollector
    processor: StreamProcessor
    ingestion: IngestionService
    consumers: ConsumerGroupRunner
    retention: RetentionService
    scheduler: RetentionScheduler
    gdpr: GdprHooks
    archive: Optional[ColdArchive] = None

    def start_background(self) -> None:
        self.consumers.start()
        self.scheduler.start()

    def stop_background(self) -> None:
        self.scheduler.stop()
        self.consumers.stop()


def build_context(
    settings: Optional[Settings] = None,
    log: Optional[DurableLog] = None,
    store: Optional[AnalyticalStore] = None,
    relational: Optional[RelationalStore] = None,
    cache: Optional[TtlCache] = None,
    enricher: Optional[EventEnricher] = None,
    archive: Optional[ColdArchive] = None,
) -> PipelineContext:
    """Build every component. Explicit arguments override the backend choice."""
    settings = settings or Settings.from_env()

    if settings.use_postgres:
        run_migration(settings.database_url)
        log = log or PostgresLog(settings.database_url, settings.log_partitions)
        store = store or PostgresAnalyticalStore(settings.database_url)
        relational = relational or PostgresRelationalStore(settings.database_url)
        logger.info("Using PostgreSQL backends")
    else:
        log = log or InMemoryLog(settings.log_partitions)
        store = store or InMemoryAnalyticalStore()
        relational = relational or InMemoryRelationalStore()
        logger.info("DATABASE_URL not set, using in-memory backends")

    cache = cache or TtlCache()
    metrics = MetricsCollector()
    session_cache = SessionEventCache(cache, settings.cache_event_ttl_seconds, settings.cache_session_max_events)
    realtime = RealtimeMetrics(cache, settings.realtime_metric_ttl_seconds)
    enricher = enricher or EventEnricher(GeoLocator(settings.geoip_url, settings.geoip_timeout_seconds))
    if archive is None and settings.enable_archiving:
        archive = FilesystemArchive(settings.archive_dir)

    processor = StreamProcessor(store, session_cache, realtime, metrics, enricher, relational)
    consumers = ConsumerGroupRunner(
        log,
        processor,
        metrics,
        poll_interval=settings.consumer_poll_interval_seconds,
        max_message_bytes=settings.max_message_bytes,
        batch_size=settings.consumer_poll_batch,
    )
    retention = RetentionService(
        store,
        relational,
        cache,
        archive=archive,
        metrics=metrics,
        event_ttl_days=settings.event_ttl_days,
        session_retention_days=settings.session_retention_days,
        archive_after_days=settings.archive_after_days,
        enable_archiving=settings.enable_archiving,
        archive_batch_size=settings.archive_batch_size,
    )

    if settings.bootstrap_api_key and relational.find_api_key(settings.bootstrap_api_key) is None:
        relational.create_api_key("bootstrap", key=settings.bootstrap_api_key)
        logger.info("Seeded bootstrap API key")

    return PipelineContext(
        settings=settings,
        log=log,
        store=store,
        relational=relational,
        cache=cache,
        session_cache=session_cache,
        realtime=realtime,
        metrics=metrics,
        processor=processor,
        ingestion=IngestionService(log, metrics),
        consumers=consumers,
        retention=retention,
        scheduler=RetentionScheduler(retention, settings.retention_interval_hours),
        gdpr=GdprHooks(store, relational, session_cache),
        archive=archive,
    )
