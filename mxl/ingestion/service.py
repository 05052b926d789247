"""
MxL Ingestion Service
Writes validated envelopes onto the durable log.

Single events carry the originating request context so the stream processor
can enrich them. Batches are fanned out per event type; they have no single
originating request, so they carry none.
"""

import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional

from fastapi import Request

from mxl.ingestion.log import DurableLog, LogMessage, publish_or_raise
from mxl.observability.metrics import MetricsCollector
from mxl.telemetry.models import (
    EventOrigin,
    LogEnvelope,
    RequestContext,
    TelemetryEvent,
    topic_for,
)

logger = logging.getLogger(__name__)

SCREEN_HEADERS = {
    "x-screen-width": "width",
    "x-screen-height": "height",
    "x-screen-density": "density",
    "x-screen-resolution": "resolution",
}


def request_context_from(request: Request) -> RequestContext:
    """Collect enrichment inputs from an incoming request."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        source_ip = forwarded.split(",")[0].strip()
    else:
        source_ip = request.client.host if request.client else None
    screen = {
        name: request.headers[header]
        for header, name in SCREEN_HEADERS.items()
        if request.headers.get(header)
    }
    return RequestContext(
        source_ip=source_ip or None,
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
        accept_encoding=request.headers.get("accept-encoding"),
        screen=screen,
    )


class IngestionService:

    def __init__(
        self,
        log: DurableLog,
        metrics: MetricsCollector,
        clock: Callable[[], float] = time.time,
    ):
        self.log = log
        self.metrics = metrics
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def submit(self, event: TelemetryEvent, context: Optional[RequestContext] = None) -> LogMessage:
        """Publish one event keyed by its sessionId."""
        envelope = LogEnvelope(
            event=event.to_wire(),
            origin=EventOrigin.SINGLE,
            received_at=self._now_ms(),
            context=context,
        )
        topic = topic_for(event.event_type)
        written = publish_or_raise(self.log, topic, [(event.session_id, envelope.model_dump_json())])
        self.metrics.increment("telemetry_events_received_total", {"event_type": event.event_type, "origin": "single"})
        logger.debug(f"Accepted {event.event_type} event for session {event.session_id}")
        return written[0]

    def submit_batch(self, events: List[TelemetryEvent]) -> int:
        """
        Publish an already-validated batch, one publish per event type.
        Relative order of events within a session is preserved.
        """
        received_at = self._now_ms()
        by_type: Dict[str, List[TelemetryEvent]] = OrderedDict()
        for event in events:
            by_type.setdefault(event.event_type, []).append(event)

        for event_type, typed in by_type.items():
            messages = [
                (
                    e.session_id,
                    LogEnvelope(event=e.to_wire(), origin=EventOrigin.BATCH, received_at=received_at).model_dump_json(),
                )
                for e in typed
            ]
            publish_or_raise(self.log, topic_for(event_type), messages)
            self.metrics.increment(
                "telemetry_events_received_total",
                {"event_type": event_type, "origin": "batch"},
                amount=len(typed),
            )

        self.metrics.observe("telemetry_batch_size", len(events))
        logger.debug(f"Accepted batch of {len(events)} events across {len(by_type)} topics")
        return len(events)
