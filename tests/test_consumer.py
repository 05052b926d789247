"""
Topic Consumer Tests

- Malformed, oversized and wrong-topic messages go to the dead-letter topic and are committed
- Transient store failures leave the offset uncommitted; redelivery succeeds later
- Consecutive batch-origin messages share one store round trip
- drain() terminates on a stuck partition
"""

import json
from unittest.mock import patch

from mxl.errors import PipelineErrorCode, TransientInfrastructureError
from mxl.ingestion.log import DEAD_LETTER_TOPIC
from mxl.processing.consumer import TopicConsumer, group_for
from mxl.telemetry.models import EventOrigin, LogEnvelope


def publish(pipeline, payload, origin=EventOrigin.SINGLE, topic=None):
    envelope = LogEnvelope(event=payload, origin=origin, received_at=1700000000000)
    topic = topic or f"telemetry-{payload['eventType']}"
    return pipeline.log.publish(topic, [(payload["sessionId"], envelope.model_dump_json())])[0]


def consumer_for(pipeline, event_type):
    return pipeline.consumers.consumers[event_type]


class TestDeadLetter:

    def test_malformed_json(self, pipeline):
        message = pipeline.log.publish("telemetry-crash", [("s", "not json")])[0]

        result = consumer_for(pipeline, "crash").poll_once()

        assert result.dead_lettered == 1
        assert result.processed == 0
        dead = pipeline.log.messages(DEAD_LETTER_TOPIC)
        assert len(dead) == 1
        record = json.loads(dead[0].value)
        assert record["errorCode"] == PipelineErrorCode.MALFORMED_MESSAGE.value
        assert record["value"] == "not json"
        assert pipeline.log.committed(group_for("crash"), "telemetry-crash", message.partition) == message.offset

    def test_invalid_event_inside_envelope(self, pipeline, make_payload):
        payload = make_payload("log")
        del payload["deviceInfo"]
        publish(pipeline, payload)

        result = consumer_for(pipeline, "log").poll_once()

        assert result.dead_lettered == 1
        assert pipeline.store.count() == 0

    def test_wrong_topic(self, pipeline, make_payload):
        publish(pipeline, make_payload("network"), topic="telemetry-crash")

        result = consumer_for(pipeline, "crash").poll_once()

        assert result.dead_lettered == 1
        assert "does not belong" in json.loads(pipeline.log.messages(DEAD_LETTER_TOPIC)[0].value)["error"]

    def test_oversized_not_copied(self, pipeline, make_payload):
        consumer = TopicConsumer("log", pipeline.log, pipeline.processor, pipeline.metrics, max_message_bytes=100)
        publish(pipeline, make_payload("log", data={"message": "x" * 500}))

        result = consumer.poll_once()

        assert result.dead_lettered == 1
        record = json.loads(pipeline.log.messages(DEAD_LETTER_TOPIC)[0].value)
        assert record["errorCode"] == PipelineErrorCode.OVERSIZED_MESSAGE.value
        assert "value" not in record

    def test_good_message_after_bad_still_processed(self, pipeline, make_payload):
        pipeline.log.publish("telemetry-trace", [("session-1", "{}")])
        publish(pipeline, make_payload("trace", data={"duration": 40}))

        result = consumer_for(pipeline, "trace").poll_once()

        assert result.dead_lettered == 1
        assert result.processed == 1
        assert pipeline.store.all_events()[0].metrics == {"trace_duration": 40.0}

    def test_dead_letters_counted(self, pipeline):
        pipeline.log.publish("telemetry-crash", [("s", "[]")])
        consumer_for(pipeline, "crash").poll_once()
        assert pipeline.metrics.counter_value(
            "telemetry_dead_letters_total",
            {"event_type": "crash", "reason": PipelineErrorCode.MALFORMED_MESSAGE.value},
        ) == 1


class TestRedelivery:

    def test_store_failure_leaves_offset_uncommitted(self, pipeline, make_payload):
        message = publish(pipeline, make_payload("crash"))
        consumer = consumer_for(pipeline, "crash")
        group = group_for("crash")

        with patch.object(pipeline.store, "insert", side_effect=ConnectionError("store down")):
            result = consumer.poll_once()

        assert result.failed_partitions == [message.partition]
        assert pipeline.log.committed(group, "telemetry-crash", message.partition) == 0
        assert pipeline.store.count() == 0

        result = consumer.poll_once()

        assert result.processed == 1
        assert pipeline.store.count() == 1
        assert pipeline.log.committed(group, "telemetry-crash", message.partition) == message.offset

    def test_failure_stops_partition_in_order(self, pipeline, make_payload):
        first = publish(pipeline, make_payload("log", data={"n": 1}))
        publish(pipeline, make_payload("log", data={"n": 2}))
        calls = []

        def fail_first(event):
            calls.append(event.data["n"])
            raise ConnectionError("store down")

        with patch.object(pipeline.store, "insert", side_effect=fail_first):
            consumer_for(pipeline, "log").poll_once()

        assert calls == [1]
        assert pipeline.log.committed(group_for("log"), "telemetry-log", first.partition) == 0

    def test_drain_stops_on_stuck_partition(self, pipeline, make_payload):
        publish(pipeline, make_payload("crash"))
        with patch.object(pipeline.processor, "process_event",
                          side_effect=TransientInfrastructureError(PipelineErrorCode.STORE_UNAVAILABLE, "down")):
            result = pipeline.consumers.drain(max_rounds=10)

        assert result.processed == 0
        assert len(result.failed_partitions) == 1
        assert pipeline.log.lag(group_for("crash"), "telemetry-crash") == 1


class TestBatchRuns:

    def test_consecutive_batch_messages_share_one_write(self, pipeline, make_payload):
        for n in range(3):
            publish(pipeline, make_payload("log", data={"n": n}), origin=EventOrigin.BATCH)

        result = consumer_for(pipeline, "log").poll_once()

        assert result.processed == 3
        assert pipeline.store.write_calls == 1
        assert sorted(e.data["n"] for e in pipeline.store.all_events()) == [0, 1, 2]

    def test_single_message_breaks_a_run(self, pipeline, make_payload):
        publish(pipeline, make_payload("log", data={"n": 0}), origin=EventOrigin.BATCH)
        publish(pipeline, make_payload("log", data={"n": 1}))
        publish(pipeline, make_payload("log", data={"n": 2}), origin=EventOrigin.BATCH)

        result = consumer_for(pipeline, "log").poll_once()

        assert result.processed == 3
        assert pipeline.store.write_calls == 3

    def test_lag_gauge_updated(self, pipeline, make_payload):
        publish(pipeline, make_payload("network", data={"duration": 1}))
        consumer_for(pipeline, "network").poll_once()
        assert pipeline.metrics.gauge_value("telemetry_consumer_lag", {"event_type": "network"}) == 0


class TestPoisonMessages:

    def test_huge_integer_does_not_stall_partition(self, pipeline, make_payload):
        poison = make_payload("performance", data={"metric": "fps", "value": 10 ** 400})
        raw = json.dumps({"event": poison, "origin": "single", "received_at": 1700000000000})
        pipeline.log.publish("telemetry-performance", [("session-1", raw)])
        publish(pipeline, make_payload("performance", data={"metric": "fps", "value": 5}))

        consumer_for(pipeline, "performance").poll_once()

        assert pipeline.log.lag(group_for("performance"), "telemetry-performance") == 0
        assert {"fps": 5.0} in [e.metrics for e in pipeline.store.all_events()]

    def test_unexpected_error_dead_lettered_and_next_processed(self, pipeline, make_payload):
        publish(pipeline, make_payload("log", data={"n": 1}))
        second = publish(pipeline, make_payload("log", data={"n": 2}))
        original = pipeline.processor.process_event

        def fail_first(event_type, envelope):
            if envelope.event["data"]["n"] == 1:
                raise OverflowError("int too large to convert to float")
            return original(event_type, envelope)

        with patch.object(pipeline.processor, "process_event", side_effect=fail_first):
            result = consumer_for(pipeline, "log").poll_once()

        assert result.dead_lettered == 1
        assert result.processed == 1
        assert result.failed_partitions == []
        assert [e.data["n"] for e in pipeline.store.all_events()] == [2]
        assert pipeline.log.committed(group_for("log"), "telemetry-log", second.partition) == second.offset
        record = json.loads(pipeline.log.messages(DEAD_LETTER_TOPIC)[0].value)
        assert record["errorCode"] == PipelineErrorCode.PROCESSING_FAILED.value
        assert "OverflowError" in record["error"]

    def test_failing_batch_run_retried_singly(self, pipeline, make_payload):
        for n in range(3):
            last = publish(pipeline, make_payload("log", data={"n": n}), origin=EventOrigin.BATCH)
        original = pipeline.processor.process_batch

        def reject_one(envelopes):
            if any(env.event["data"]["n"] == 1 for env in envelopes):
                raise ValueError("bad event")
            return original(envelopes)

        with patch.object(pipeline.processor, "process_batch", side_effect=reject_one):
            result = consumer_for(pipeline, "log").poll_once()

        assert result.processed == 2
        assert result.dead_lettered == 1
        assert sorted(e.data["n"] for e in pipeline.store.all_events()) == [0, 2]
        assert pipeline.log.committed(group_for("log"), "telemetry-log", last.partition) == last.offset
