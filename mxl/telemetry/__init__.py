"""
MxL Telemetry Module
Event envelope, processed event and log message models.
"""

from .models import (
    EventType,
    EventOrigin,
    DeviceInfo,
    TelemetryEvent,
    TelemetryBatch,
    RequestContext,
    LogEnvelope,
    ProcessedEvent,
    topic_for,
    validate_event,
    validate_batch,
)

__all__ = [
    "EventType",
    "EventOrigin",
    "DeviceInfo",
    "TelemetryEvent",
    "TelemetryBatch",
    "RequestContext",
    "LogEnvelope",
    "ProcessedEvent",
    "topic_for",
    "validate_event",
    "validate_batch",
]
