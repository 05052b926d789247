"""
MxL Topic Consumers
===================
One consumer per event type, group mxl-processor-<type>.

Per partition, messages are handled strictly in offset order:
- decodable, in-size, right-topic messages go to the stream processor
- consecutive batch-origin messages are processed together in one call
- malformed, oversized or wrong-topic messages are copied to the dead-letter
  topic, logged, committed and skipped
- any other processing error dead-letters the message (a failing batch run is
  retried one message at a time first) so one bad message cannot stall the partition
- a transient store failure stops the partition without committing, so the
  message is redelivered on the next poll (at-least-once)
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from mxl.errors import DeadLetterError, PipelineErrorCode, TransientInfrastructureError
from mxl.ingestion.log import DEAD_LETTER_TOPIC, DurableLog, LogMessage
from mxl.observability.metrics import MetricsCollector
from mxl.processing.processor import StreamProcessor
from mxl.telemetry.models import EventOrigin, EventType, LogEnvelope, TelemetryEvent, topic_for

logger = logging.getLogger(__name__)


def group_for(event_type: str) -> str:
    return f"mxl-processor-{event_type}"


@dataclass
class PollResult:
    processed: int = 0
    dead_lettered: int = 0
    failed_partitions: List[int] = field(default_factory=list)

    def merge(self, other: "PollResult") -> None:
        self.processed += other.processed
        self.dead_lettered += other.dead_lettered
        self.failed_partitions.extend(other.failed_partitions)


class TopicConsumer:

    def __init__(
        self,
        event_type: str,
        log: DurableLog,
        processor: StreamProcessor,
        metrics: MetricsCollector,
        max_message_bytes: int = 1024 * 1024,
        batch_size: int = 100,
    ):
        self.event_type = event_type
        self.topic = topic_for(event_type)
        self.group = group_for(event_type)
        self.log = log
        self.processor = processor
        self.metrics = metrics
        self.max_message_bytes = max_message_bytes
        self.batch_size = batch_size

    # ============================================================
    # DECODING
    # ============================================================

    def decode(self, message: LogMessage) -> LogEnvelope:
        """Parse and check one message. Raises DeadLetterError when it can never succeed."""
        if message.size > self.max_message_bytes:
            raise DeadLetterError(
                PipelineErrorCode.OVERSIZED_MESSAGE,
                f"Message of {message.size} bytes exceeds limit of {self.max_message_bytes}",
            )
        try:
            envelope = LogEnvelope.model_validate(json.loads(message.value))
            event = TelemetryEvent.model_validate(envelope.event)
        except (ValueError, ValidationError) as e:
            raise DeadLetterError(PipelineErrorCode.MALFORMED_MESSAGE, f"Undecodable message: {e}")
        if event.event_type != self.event_type:
            raise DeadLetterError(
                PipelineErrorCode.MALFORMED_MESSAGE,
                f"Event type {event.event_type} does not belong on {self.topic}",
            )
        return envelope

    def dead_letter(self, message: LogMessage, error: DeadLetterError) -> None:
        record = {
            "topic": message.topic,
            "partition": message.partition,
            "offset": message.offset,
            "errorCode": error.error_code.value,
            "error": error.message,
        }
        # Oversized payloads are referenced, not copied.
        if error.error_code != PipelineErrorCode.OVERSIZED_MESSAGE:
            record["value"] = message.value
        self.log.publish(DEAD_LETTER_TOPIC, [(message.key, json.dumps(record))])
        self.metrics.increment("telemetry_dead_letters_total", {"event_type": self.event_type, "reason": error.error_code.value})
        logger.error(
            f"Dead-lettered {message.topic}[{message.partition}]@{message.offset}: {error.message}"
        )

    # ============================================================
    # POLLING
    # ============================================================

    def _skip(self, partition: int, message: LogMessage, error: DeadLetterError) -> None:
        self.dead_letter(message, error)
        self.log.commit(self.group, self.topic, partition, message.offset)

    @staticmethod
    def _as_dead_letter(error: Exception) -> DeadLetterError:
        return DeadLetterError(
            PipelineErrorCode.PROCESSING_FAILED,
            f"Processing failed: {type(error).__name__}: {error}",
        )

    def _process_single(self, partition: int, message: LogMessage, envelope: LogEnvelope, result: PollResult) -> None:
        try:
            self.processor.process_event(self.event_type, envelope)
        except TransientInfrastructureError:
            raise
        except Exception as e:
            self._skip(partition, message, self._as_dead_letter(e))
            result.dead_lettered += 1
            return
        self.log.commit(self.group, self.topic, partition, message.offset)
        result.processed += 1

    def _flush_batch(self, partition: int, pending: List[Tuple[LogMessage, LogEnvelope]], result: PollResult) -> None:
        if not pending:
            return
        try:
            self.processor.process_batch([env for _, env in pending])
        except TransientInfrastructureError:
            raise
        except Exception as e:
            # Retry the run one message at a time so only the poison message is skipped.
            logger.warning(f"{self.topic}[{partition}] batch run of {len(pending)} failed, retrying singly: {e}")
            for message, envelope in pending:
                try:
                    self.processor.process_batch([envelope])
                except TransientInfrastructureError:
                    raise
                except Exception as single_error:
                    self._skip(partition, message, self._as_dead_letter(single_error))
                    result.dead_lettered += 1
                    continue
                self.log.commit(self.group, self.topic, partition, message.offset)
                result.processed += 1
            return
        self.log.commit(self.group, self.topic, partition, pending[-1][0].offset)
        result.processed += len(pending)

    def poll_partition(self, partition: int) -> PollResult:
        result = PollResult()
        messages = self.log.poll(self.group, self.topic, partition, self.batch_size)
        pending: List[Tuple[LogMessage, LogEnvelope]] = []

        try:
            for message in messages:
                try:
                    envelope = self.decode(message)
                except DeadLetterError as e:
                    self._flush_batch(partition, pending, result)
                    pending = []
                    self._skip(partition, message, e)
                    result.dead_lettered += 1
                    continue

                if envelope.origin == EventOrigin.BATCH.value:
                    pending.append((message, envelope))
                    continue

                self._flush_batch(partition, pending, result)
                pending = []
                self._process_single(partition, message, envelope, result)

            self._flush_batch(partition, pending, result)
        except TransientInfrastructureError as e:
            logger.warning(
                f"{self.topic}[{partition}] stopped on transient failure, will redeliver: {e.message}"
            )
            self.metrics.increment("telemetry_processing_retries_total", {"event_type": self.event_type})
            result.failed_partitions.append(partition)
        return result

    def poll_once(self) -> PollResult:
        """One pass over every partition of this topic."""
        result = PollResult()
        for partition in self.log.partitions(self.topic):
            result.merge(self.poll_partition(partition))
        try:
            self.metrics.set_gauge("telemetry_consumer_lag", self.log.lag(self.group, self.topic), {"event_type": self.event_type})
        except Exception as e:
            logger.debug(f"Lag check failed for {self.topic}: {e}")
        return result


class ConsumerGroupRunner:
    """Runs one TopicConsumer per event type on its own thread."""

    def __init__(
        self,
        log: DurableLog,
        processor: StreamProcessor,
        metrics: MetricsCollector,
        poll_interval: float = 1.0,
        max_message_bytes: int = 1024 * 1024,
        batch_size: int = 100,
    ):
        self.poll_interval = poll_interval
        self.consumers: Dict[str, TopicConsumer] = {
            t.value: TopicConsumer(t.value, log, processor, metrics, max_message_bytes, batch_size)
            for t in EventType
        }
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _loop(self, consumer: TopicConsumer) -> None:
        logger.info(f"Consumer {consumer.group} started")
        while not self._stop.is_set():
            try:
                result = consumer.poll_once()
            except Exception as e:
                logger.error(f"Consumer {consumer.group} poll failed: {e}")
                result = None
            if result is None or (result.processed == 0 and result.dead_lettered == 0):
                self._stop.wait(self.poll_interval)
        logger.info(f"Consumer {consumer.group} stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(c,), name=c.group, daemon=True)
            for c in self.consumers.values()
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def drain(self, max_rounds: int = 100) -> PollResult:
        """
        Poll every consumer synchronously until nothing is left or every
        remaining partition is failing. For tests and one-shot tools.
        """
        total = PollResult()
        for _ in range(max_rounds):
            round_result = PollResult()
            for consumer in self.consumers.values():
                round_result.merge(consumer.poll_once())
            total.processed += round_result.processed
            total.dead_lettered += round_result.dead_lettered
            if round_result.processed == 0 and round_result.dead_lettered == 0:
                total.failed_partitions = round_result.failed_partitions
                break
        return total
