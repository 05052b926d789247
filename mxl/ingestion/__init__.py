"""
MxL Ingestion Module
Envelope validation, API key auth and durable log publishing.
"""

from .log import DEAD_LETTER_TOPIC, DurableLog, InMemoryLog, LogMessage, PostgresLog
from .auth import authenticate, extract_api_key, require_api_key
from .service import IngestionService, request_context_from
from .router import router as ingestion_router

__all__ = [
    "DEAD_LETTER_TOPIC",
    "DurableLog",
    "InMemoryLog",
    "LogMessage",
    "PostgresLog",
    "authenticate",
    "extract_api_key",
    "require_api_key",
    "IngestionService",
    "request_context_from",
    "ingestion_router",
]
