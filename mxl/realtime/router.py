"""
MxL Real-time Endpoints
GET /realtime/metrics?window=60        per-type totals and rates
GET /realtime/metrics/aggregate        summed per-event metric over a time range
GET /realtime/sessions/{id}/events     recent cached events of one session

Auth: API key required
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from mxl.errors import EventValidationError
from mxl.ingestion.auth import require_api_key
from mxl.telemetry.models import EventType

router = APIRouter(prefix="/realtime", tags=["realtime"], dependencies=[Depends(require_api_key)])


@router.get("/metrics")
def realtime_metrics(
    request: Request,
    window: int = Query(60, ge=1, le=3600),
    event_type: Optional[EventType] = Query(None, alias="eventType"),
):
    realtime = request.app.state.pipeline.realtime
    types = [event_type.value] if event_type else None
    return {"success": True, "window": window, "metrics": realtime.snapshot(window, types)}


@router.get("/metrics/aggregate")
def aggregated_metric(
    request: Request,
    event_type: EventType = Query(..., alias="eventType"),
    metric: str = Query(..., min_length=1, max_length=255),
    start: Optional[int] = Query(None, ge=0),
    end: Optional[int] = Query(None, ge=0),
):
    """Sum of one metric over [start, end] in epoch ms; defaults to the last hour."""
    end_ms = end if end is not None else int(time.time() * 1000)
    start_ms = start if start is not None else end_ms - 3600 * 1000
    if start_ms > end_ms:
        raise EventValidationError(
            [{"field": "start", "message": "start must not be after end", "type": "value_error"}],
            "Invalid time range",
        )
    aggregate = request.app.state.pipeline.store.aggregate_metric(event_type.value, metric, start_ms, end_ms)
    return {"success": True, **aggregate.to_dict()}


@router.get("/sessions/{session_id}/events")
def session_events(request: Request, session_id: str, limit: int = Query(100, ge=1, le=1000)):
    cached = request.app.state.pipeline.session_cache.session_events(session_id, limit)
    return {
        "success": True,
        "sessionId": session_id,
        "count": len(cached),
        "events": [e.model_dump(by_alias=True, mode="json") for e in cached],
    }
