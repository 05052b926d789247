"""
Per-event numeric metrics derived from the event payload.
"""

import math
from typing import Any, Dict, Mapping, Optional


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def aggregate_metrics(event_type: str, data: Mapping[str, Any]) -> Dict[str, float]:
    """
    performance -> {<metric or "unknown">: value}
    network     -> network_duration, network_size (request + response bytes)
    crash       -> crash_count = 1
    trace       -> trace_duration
    other types -> {}

    Missing or non-numeric inputs produce no entry rather than an error.
    """
    metrics: Dict[str, float] = {}
    data = data or {}

    if event_type == "performance":
        value = _number(data.get("value"))
        if value is not None:
            name = data.get("metric")
            metrics[str(name) if name else "unknown"] = value

    elif event_type == "network":
        duration = _number(data.get("duration"))
        if duration is not None:
            metrics["network_duration"] = duration
            metrics["network_size"] = (_number(data.get("requestSize")) or 0.0) + (_number(data.get("responseSize")) or 0.0)

    elif event_type == "crash":
        metrics["crash_count"] = 1.0

    elif event_type == "trace":
        duration = _number(data.get("duration"))
        if duration is not None:
            metrics["trace_duration"] = duration

    return metrics
