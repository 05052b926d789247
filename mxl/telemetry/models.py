"""
MxL Telemetry Data Models
Pydantic models for the event envelope, processed events and log messages.

Wire format is camelCase (sessionId, eventType, deviceInfo...); Python
attributes are snake_case. Both spellings are accepted on input.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, ValidationError

from mxl.errors import EventValidationError


class EventType(str, Enum):
    """Fixed set of telemetry event types. Anything else is rejected."""
    CRASH = "crash"
    PERFORMANCE = "performance"
    NETWORK = "network"
    INTERACTION = "interaction"
    LOG = "log"
    TRACE = "trace"

    @property
    def topic(self) -> str:
        return topic_for(self.value)


def topic_for(event_type: str) -> str:
    """Log topic carrying one event type."""
    return f"telemetry-{event_type}"


class EventOrigin(str, Enum):
    SINGLE = "single"
    BATCH = "batch"


class DeviceInfo(BaseModel):
    """Device description attached to every event. All fields required."""
    model_config = ConfigDict(populate_by_name=True)

    platform: str
    os_version: str = Field(alias="osVersion")
    device_model: str = Field(alias="deviceModel")
    app_version: str = Field(alias="appVersion")


class TelemetryEvent(BaseModel):
    """
    The event envelope. Validated at the ingestion boundary.
    `data` is an open map of JSON values (string/number/bool/null/list/map).
    """
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    session_id: str = Field(alias="sessionId", min_length=1)
    user_id: Optional[str] = Field(default=None, alias="userId")
    event_type: EventType = Field(alias="eventType")
    timestamp: int = Field(ge=0, description="Client capture time, epoch millis")
    data: Dict[str, JsonValue]
    device_info: DeviceInfo = Field(alias="deviceInfo")

    def to_wire(self) -> Dict[str, Any]:
        """camelCase JSON-ready dict; omits userId when absent."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class TelemetryBatch(BaseModel):
    events: List[TelemetryEvent]


class RequestContext(BaseModel):
    """Request attributes the stream processor uses for enrichment."""
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    screen: Dict[str, str] = Field(default_factory=dict)


class LogEnvelope(BaseModel):
    """Value written to the durable log for each accepted event."""
    event: Dict[str, Any]
    origin: EventOrigin = EventOrigin.SINGLE
    received_at: int
    context: Optional[RequestContext] = None

    model_config = ConfigDict(use_enum_values=True)


class ProcessedEvent(TelemetryEvent):
    """
    Server-owned event after enrichment, redaction and aggregation.
    Immutable once written; expires in bulk through retention.
    """
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="eventId")
    server_timestamp: int = Field(alias="serverTimestamp")
    enriched: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, float] = Field(default_factory=dict)
    content_hash: str = Field(default="", alias="contentHash")


# ============================================================
# VALIDATION
# ============================================================

def _field_errors(exc: ValidationError, prefix: str = "") -> List[Dict[str, Any]]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        field = f"{prefix}{loc}" if loc else (prefix.rstrip(".") or "body")
        errors.append({
            "field": field,
            "message": err.get("msg", "invalid"),
            "type": err.get("type", "value_error"),
        })
    return errors


def validate_event(payload: Any) -> TelemetryEvent:
    """Validate one envelope; raises EventValidationError listing every failing field."""
    try:
        return TelemetryEvent.model_validate(payload)
    except ValidationError as e:
        raise EventValidationError(_field_errors(e))


def validate_batch(payload: Any) -> List[TelemetryEvent]:
    """
    Validate a {events: [...]} body as a whole.
    A single invalid event rejects the entire batch.
    """
    try:
        return TelemetryBatch.model_validate(payload).events
    except ValidationError as e:
        raise EventValidationError(_field_errors(e))
