"""
MxL Health Endpoints
====================
GET /health   liveness: status, timestamp, uptime
GET /ready    readiness: per-dependency status, 503 unless every dependency answers
GET /metrics  flat text exposition of the process metrics collector
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

STARTED_AT = time.time()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _check(name: str, probe: Callable[[], bool]) -> Dict[str, str]:
    try:
        if probe():
            return {"status": "healthy"}
        return {"status": "error", "error": "ping failed"}
    except Exception as e:
        logger.warning(f"Readiness check for {name} failed: {e}")
        return {"status": "error", "error": str(e)}


def readiness(pipeline) -> Dict:
    components = {
        "log_broker": _check("log_broker", pipeline.log.ping),
        "analytical_store": _check("analytical_store", pipeline.store.ping),
        "cache": _check("cache", pipeline.cache.ping),
        "relational_store": _check("relational_store", pipeline.relational.ping),
    }
    ready = all(c["status"] == "healthy" for c in components.values())
    return {
        "status": "ready" if ready else "not_ready",
        "ready": ready,
        "timestamp": _now_iso(),
        "components": components,
    }


@router.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": _now_iso(),
        "uptime": round(time.time() - STARTED_AT, 3),
    }


@router.get("/ready")
def ready(request: Request):
    pipeline = request.app.state.pipeline
    status = readiness(pipeline)
    pipeline.metrics.set_gauge("pipeline_ready", 1 if status["ready"] else 0)
    return JSONResponse(status_code=200 if status["ready"] else 503, content=status)


@router.get("/metrics", response_class=PlainTextResponse)
def metrics(request: Request):
    pipeline = request.app.state.pipeline
    stats = pipeline.retention.stats()
    pipeline.metrics.set_gauge("stored_events", stats["telemetryEvents"])
    pipeline.metrics.set_gauge("active_sessions", stats["sessions"])
    pipeline.metrics.set_gauge("cache_entries", stats["cacheSize"])
    return PlainTextResponse(pipeline.metrics.render(), media_type="text/plain; version=0.0.4")
