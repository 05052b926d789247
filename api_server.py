"""
MxL Telemetry API Server
========================
FastAPI application factory for the ingestion boundary, GDPR hooks,
real-time reads and health/metrics endpoints.

Routers:
- /telemetry, /telemetry/batch        (also under /api/v1)
- /gdpr/export|delete|anonymize       (also under /api/v1)
- /realtime/...                       (also under /api/v1)
- /health, /ready, /metrics
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mxl import __version__
from mxl.context import PipelineContext, build_context
from mxl.errors import (
    AuthenticationError,
    EventValidationError,
    PipelineError,
    TransientInfrastructureError,
)
from mxl.gdpr.router import router as gdpr_router
from mxl.ingestion.router import router as ingestion_router
from mxl.observability.health import router as health_router
from mxl.realtime.router import router as realtime_router

logger = logging.getLogger(__name__)


# ============================================
# Error Handlers
# ============================================

def _validation_error(request: Request, exc: EventValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_code,
        content={"success": False, "error": exc.message, "details": exc.field_errors},
    )


def _auth_error(request: Request, exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_code,
        content={"success": False, "error": exc.title, "message": exc.message},
    )


def _transient_error(request: Request, exc: TransientInfrastructureError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.http_code,
        content={"success": False, "error": "Service unavailable", "message": exc.message},
        headers={"Retry-After": "5"},
    )


def _pipeline_error(request: Request, exc: PipelineError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.http_code,
        content={"success": False, "error": exc.error_code.value, "message": exc.message},
    )


# ============================================
# App Factory
# ============================================

def create_app(context: Optional[PipelineContext] = None, run_background: bool = False) -> FastAPI:
    """
    Build the FastAPI app around a pipeline context.
    run_background starts consumers and the retention scheduler with the app.
    """
    context = context or build_context()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_background:
            context.start_background()
        try:
            yield
        finally:
            if run_background:
                context.stop_background()

    app = FastAPI(
        title="MxL Telemetry API",
        description="Mobile telemetry ingestion and processing pipeline",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.pipeline = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EventValidationError, _validation_error)
    app.add_exception_handler(AuthenticationError, _auth_error)
    app.add_exception_handler(TransientInfrastructureError, _transient_error)
    app.add_exception_handler(PipelineError, _pipeline_error)

    for router in (ingestion_router, gdpr_router, realtime_router):
        app.include_router(router)
        app.include_router(router, prefix="/api/v1")
    app.include_router(health_router)

    return app
