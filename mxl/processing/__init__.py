"""
MxL Processing Module
Enrichment, aggregation, the stream processor and its topic consumers.
"""

from .aggregator import aggregate_metrics
from .enricher import EventEnricher, GeoLocator, device_fingerprint, is_public_address, parse_user_agent
from .processor import StreamProcessor
from .consumer import ConsumerGroupRunner, PollResult, TopicConsumer, group_for

__all__ = [
    "aggregate_metrics",
    "EventEnricher",
    "GeoLocator",
    "device_fingerprint",
    "is_public_address",
    "parse_user_agent",
    "StreamProcessor",
    "ConsumerGroupRunner",
    "PollResult",
    "TopicConsumer",
    "group_for",
]
