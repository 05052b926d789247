"""
MxL Stream Processor
====================
Turns log envelopes into processed events and persists them.

Single path:  enrich -> redact -> aggregate -> store -> session cache -> realtime counter
Batch path:   receipt time -> redact -> aggregate -> one store write -> one cache write

Redaction runs on both paths; nothing unredacted reaches the store or cache.
Store failures surface as TransientInfrastructureError so the consumer leaves
the offset uncommitted and the message is redelivered.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from mxl.errors import PipelineErrorCode, TransientInfrastructureError
from mxl.observability.metrics import MetricsCollector
from mxl.privacy.redaction import redact, redact_structured
from mxl.processing.aggregator import aggregate_metrics
from mxl.processing.enricher import EventEnricher
from mxl.realtime.metrics_cache import RealtimeMetrics
from mxl.shared.hashing import canonicalize_and_hash
from mxl.storage.cache import SessionEventCache
from mxl.storage.event_store import AnalyticalStore
from mxl.storage.relational import RelationalStore
from mxl.telemetry.models import EventOrigin, LogEnvelope, ProcessedEvent, TelemetryEvent

logger = logging.getLogger(__name__)

SESSION_END_ACTION = "session_end"


class StreamProcessor:

    def __init__(
        self,
        store: AnalyticalStore,
        session_cache: SessionEventCache,
        realtime: RealtimeMetrics,
        metrics: MetricsCollector,
        enricher: Optional[EventEnricher] = None,
        relational: Optional[RelationalStore] = None,
    ):
        self.store = store
        self.session_cache = session_cache
        self.realtime = realtime
        self.metrics = metrics
        self.enricher = enricher or EventEnricher()
        self.relational = relational

    # ============================================================
    # BUILDING
    # ============================================================

    def _build(self, event: TelemetryEvent, enriched: Dict[str, Any]) -> ProcessedEvent:
        wire = event.to_wire()
        data = redact_structured(wire.get("data", {}))
        device_info = redact_structured(wire["deviceInfo"])
        user_id = wire.get("userId")
        redacted = {
            "sessionId": wire["sessionId"],
            "eventType": wire["eventType"],
            "timestamp": wire["timestamp"],
            "data": data,
            "deviceInfo": device_info,
        }
        if user_id is not None:
            redacted["userId"] = redact(user_id)

        return ProcessedEvent.model_validate({
            **redacted,
            "serverTimestamp": self.enricher.now_ms(),
            "enriched": redact_structured(enriched),
            "metrics": aggregate_metrics(wire["eventType"], data),
            "contentHash": canonicalize_and_hash(redacted),
        })

    def build_event(self, envelope: LogEnvelope) -> ProcessedEvent:
        """Full enrichment; used for single submissions."""
        event = TelemetryEvent.model_validate(envelope.event)
        enriched = self.enricher.enrich(envelope.context, envelope.received_at)
        return self._build(event, enriched)

    def build_batch_event(self, envelope: LogEnvelope) -> ProcessedEvent:
        event = TelemetryEvent.model_validate(envelope.event)
        return self._build(event, self.enricher.receipt_only(envelope.received_at))

    # ============================================================
    # PERSISTENCE
    # ============================================================

    def _persist(self, events: List[ProcessedEvent]) -> None:
        try:
            if len(events) == 1:
                self.store.insert(events[0])
            else:
                self.store.insert_batch(events)
        except TransientInfrastructureError:
            raise
        except Exception as e:
            logger.error(f"Analytical store write failed: {e}")
            raise TransientInfrastructureError(PipelineErrorCode.STORE_UNAVAILABLE, f"Store unavailable: {e}")

        # Cache and session bookkeeping are secondary: the rows are already durable.
        try:
            self.session_cache.cache_batch(events)
        except Exception as e:
            logger.error(f"Session cache write failed: {e}")
            self.metrics.increment("telemetry_cache_errors_total")

        if self.relational is not None:
            self._track_sessions(events)

    def _track_sessions(self, events: List[ProcessedEvent]) -> None:
        for event in events:
            at = datetime.fromtimestamp(event.server_timestamp / 1000, tz=timezone.utc)
            try:
                self.relational.upsert_session(event.session_id, event.user_id, at)
                if event.data.get("action") == SESSION_END_ACTION:
                    self.relational.end_session(event.session_id, at)
            except Exception as e:
                logger.error(f"Session bookkeeping failed for {event.session_id}: {e}")

    # ============================================================
    # ENTRY POINTS
    # ============================================================

    def process_event(self, event_type: str, envelope: LogEnvelope) -> ProcessedEvent:
        """Process one single-origin envelope consumed from telemetry-<event_type>."""
        started = time.time()
        processed = self.build_event(envelope)
        self._persist([processed])

        try:
            self.realtime.record(event_type)
        except Exception as e:
            logger.error(f"Realtime counter update failed: {e}")

        self.metrics.increment("telemetry_events_processed_total", {"event_type": event_type})
        self.metrics.observe("telemetry_processing_seconds", time.time() - started, {"path": "single"})
        logger.debug(f"Processed {event_type} event for session {processed.session_id}")
        return processed

    def process_batch(self, envelopes: List[LogEnvelope]) -> List[ProcessedEvent]:
        """Process batch-origin envelopes with one store round trip."""
        if not envelopes:
            return []
        started = time.time()
        processed = [self.build_batch_event(e) for e in envelopes]
        self._persist(processed)

        counts: Dict[str, int] = {}
        for event in processed:
            counts[event.event_type] = counts.get(event.event_type, 0) + 1
        for event_type, n in counts.items():
            try:
                self.realtime.record(event_type, amount=n)
            except Exception as e:
                logger.error(f"Realtime counter update failed: {e}")
            self.metrics.increment("telemetry_events_processed_total", {"event_type": event_type}, amount=n)

        self.metrics.observe("telemetry_processing_seconds", time.time() - started, {"path": "batch"})
        logger.debug(f"Processed batch of {len(processed)} events")
        return processed

    def process(self, event_type: str, envelope: LogEnvelope) -> ProcessedEvent:
        if envelope.origin == EventOrigin.BATCH.value:
            return self.process_batch([envelope])[0]
        return self.process_event(event_type, envelope)
