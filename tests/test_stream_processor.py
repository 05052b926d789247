"""
Stream Processor Tests

- Metric aggregation per event type
- Redaction before storage on both single and batch paths
- One store round trip per batch
- Cache and realtime counters updated
- Store failure surfaces as a transient error
- Session bookkeeping
"""

from unittest.mock import MagicMock

import pytest

from mxl.errors import TransientInfrastructureError
from mxl.observability.metrics import MetricsCollector
from mxl.processing.aggregator import aggregate_metrics
from mxl.processing.enricher import EventEnricher
from mxl.processing.processor import StreamProcessor
from mxl.realtime.metrics_cache import RealtimeMetrics
from mxl.storage.cache import SessionEventCache, TtlCache
from mxl.storage.event_store import InMemoryAnalyticalStore, MetricAggregate
from mxl.storage.relational import InMemoryRelationalStore
from mxl.telemetry.models import EventOrigin, LogEnvelope, ProcessedEvent, RequestContext


def envelope(payload, origin=EventOrigin.SINGLE, context=None):
    return LogEnvelope(event=payload, origin=origin, received_at=1700000000000, context=context)


@pytest.fixture
def parts():
    cache = TtlCache(clock=lambda: 1700000100.0)
    store = InMemoryAnalyticalStore()
    relational = InMemoryRelationalStore()
    processor = StreamProcessor(
        store,
        SessionEventCache(cache),
        RealtimeMetrics(cache, clock=lambda: 1700000100.0),
        MetricsCollector(),
        EventEnricher(clock=lambda: 1700000100.0),
        relational,
    )
    return processor, store, cache, relational


class TestAggregateMetrics:

    def test_performance(self):
        assert aggregate_metrics("performance", {"metric": "app_start", "value": 812}) == {"app_start": 812.0}

    def test_performance_unnamed(self):
        assert aggregate_metrics("performance", {"value": 5}) == {"unknown": 5.0}

    def test_performance_without_value(self):
        assert aggregate_metrics("performance", {"metric": "fps"}) == {}

    def test_network(self):
        metrics = aggregate_metrics("network", {"duration": 203, "requestSize": 100, "responseSize": 2048})
        assert metrics == {"network_duration": 203.0, "network_size": 2148.0}

    def test_network_missing_sizes(self):
        assert aggregate_metrics("network", {"duration": 50})["network_size"] == 0.0

    def test_crash(self):
        assert aggregate_metrics("crash", {}) == {"crash_count": 1.0}

    def test_trace(self):
        assert aggregate_metrics("trace", {"duration": 12.5}) == {"trace_duration": 12.5}

    def test_other_types_empty(self):
        assert aggregate_metrics("interaction", {"value": 3}) == {}
        assert aggregate_metrics("log", {"duration": 3}) == {}

    def test_non_numeric_ignored(self):
        assert aggregate_metrics("network", {"duration": "fast"}) == {}
        assert aggregate_metrics("performance", {"value": True}) == {}

    def test_out_of_range_numbers_ignored(self):
        assert aggregate_metrics("performance", {"metric": "fps", "value": 10 ** 400}) == {}
        assert aggregate_metrics("trace", {"duration": float("inf")}) == {}
        assert aggregate_metrics("network", {"duration": float("nan")}) == {}
        assert aggregate_metrics("network", {"duration": 5, "responseSize": 10 ** 400})["network_size"] == 0.0


class TestProcessEvent:

    def test_redacts_enriches_and_stores(self, parts, make_payload):
        processor, store, cache, _ = parts
        payload = make_payload("network", data={"email": "user@example.com", "duration": 120, "url": "https://x.io/a"})
        context = RequestContext(user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) Mobile/15E148")

        processed = processor.process_event("network", envelope(payload, context=context))

        stored = store.all_events()
        assert len(stored) == 1
        assert stored[0].data["email"] == "[REDACTED]"
        assert stored[0].metrics["network_duration"] == 120.0
        assert stored[0].server_timestamp == 1700000100000
        assert stored[0].enriched["userAgent"]["os"] == "iOS"
        assert stored[0].enriched["receivedAt"] == 1700000000000
        assert processed.content_hash.startswith("sha256:")

    def test_session_cache_and_realtime_updated(self, parts, make_payload):
        processor, _, cache, _ = parts
        processed = processor.process_event("crash", envelope(make_payload("crash")))

        session_cache = processor.session_cache
        assert session_cache.cached_event("session-1", processed.event_id).event_id == processed.event_id
        assert processor.realtime.count("crash", 1700000100) == 1

    def test_store_failure_is_transient(self, parts, make_payload):
        processor, _, _, _ = parts
        processor.store = MagicMock()
        processor.store.insert.side_effect = ConnectionError("store down")

        with pytest.raises(TransientInfrastructureError):
            processor.process_event("log", envelope(make_payload("log")))

    def test_cache_failure_does_not_fail_event(self, parts, make_payload):
        processor, store, _, _ = parts
        processor.session_cache = MagicMock()
        processor.session_cache.cache_batch.side_effect = RuntimeError("cache down")

        processor.process_event("log", envelope(make_payload("log")))

        assert store.count() == 1
        assert processor.metrics.counter_value("telemetry_cache_errors_total") == 1

    def test_session_tracked_and_ended(self, parts, make_payload):
        processor, _, _, relational = parts
        processor.process_event("interaction", envelope(make_payload(data={"action": "tap"})))
        assert relational.active_session_count() == 1

        processor.process_event("interaction", envelope(make_payload(data={"action": "session_end"})))
        sessions = relational.sessions_for_user("user-42")
        assert len(sessions) == 1
        assert sessions[0].ended_at is not None


class TestProcessBatch:

    def test_single_round_trip(self, parts, make_payload):
        processor, store, _, _ = parts
        envelopes = [
            envelope(make_payload("log", data={"message": f"line {i} from a@b.io"}), origin=EventOrigin.BATCH)
            for i in range(5)
        ]

        processed = processor.process_batch(envelopes)

        assert len(processed) == 5
        assert store.write_calls == 1
        assert all("a@b.io" not in e.data["message"] for e in store.all_events())
        assert processor.realtime.count("log", 1700000100) == 5

    def test_batch_enrichment_is_receipt_only(self, parts, make_payload):
        processor, store, _, _ = parts
        processor.process_batch([envelope(make_payload(), origin=EventOrigin.BATCH)])
        assert set(store.all_events()[0].enriched) == {"receivedAt", "processedAt"}

    def test_empty_batch(self, parts):
        processor, store, _, _ = parts
        assert processor.process_batch([]) == []
        assert store.write_calls == 0


class TestMetricQueries:

    def _stored(self, make_payload, event_type, data, timestamp):
        payload = make_payload(event_type, data=data, timestamp=timestamp)
        return ProcessedEvent.model_validate({
            **payload,
            "serverTimestamp": timestamp,
            "metrics": aggregate_metrics(event_type, data),
        })

    def test_sum_and_count_in_range(self, make_payload):
        store = InMemoryAnalyticalStore()
        store.insert_batch([
            self._stored(make_payload, "performance", {"metric": "app_start", "value": 800}, 1000),
            self._stored(make_payload, "performance", {"metric": "app_start", "value": 400}, 2000),
            self._stored(make_payload, "performance", {"metric": "app_start", "value": 999}, 5000),
            self._stored(make_payload, "performance", {"metric": "fps", "value": 60}, 1500),
            self._stored(make_payload, "trace", {"duration": 7}, 1500),
        ])

        result = store.aggregate_metric("performance", "app_start", 1000, 2000)

        assert result == MetricAggregate("performance", "app_start", 1000, 2000, total=1200.0, count=2)

    def test_no_matches(self):
        result = InMemoryAnalyticalStore().aggregate_metric("network", "network_duration", 0, 10)
        assert result.to_dict() == {
            "eventType": "network", "metricName": "network_duration",
            "start": 0, "end": 10, "total": 0.0, "count": 0,
        }
