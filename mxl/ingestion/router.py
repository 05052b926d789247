"""
MxL Ingestion Endpoints
POST /telemetry        single event
POST /telemetry/batch  {events: [...]}, validated as a whole

Auth: API key required (see mxl.ingestion.auth)
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from mxl.errors import EventValidationError
from mxl.ingestion.auth import require_api_key
from mxl.ingestion.service import request_context_from
from mxl.telemetry.models import validate_batch, validate_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["telemetry"], dependencies=[Depends(require_api_key)])


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        raise EventValidationError([{"field": "body", "message": "Request body is required", "type": "missing"}])
    try:
        return json.loads(raw)
    except ValueError as e:
        raise EventValidationError([{"field": "body", "message": f"Invalid JSON: {e}", "type": "json_invalid"}])


@router.post("/telemetry")
async def ingest_event(request: Request):
    """Validate one envelope and write it to the log under its event type."""
    payload = await _json_body(request)
    try:
        event = validate_event(payload)
    except EventValidationError as e:
        logger.warning(f"Invalid telemetry payload: {e.fields}")
        raise

    service = request.app.state.pipeline.ingestion
    await run_in_threadpool(service.submit, event, request_context_from(request))
    return {"success": True, "message": "Telemetry received"}


@router.post("/telemetry/batch")
async def ingest_batch(request: Request):
    """Validate every event; any failure rejects the batch. Then fan out per type."""
    payload = await _json_body(request)
    try:
        events = validate_batch(payload)
    except EventValidationError as e:
        logger.warning(f"Invalid batch payload: {e.fields}")
        raise

    service = request.app.state.pipeline.ingestion
    count = await run_in_threadpool(service.submit_batch, events)
    return {"success": True, "message": f"Processed {count} events"}
