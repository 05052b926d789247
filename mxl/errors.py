"""
MxL Pipeline Errors
===================
Error taxonomy shared by the ingestion boundary, the stream processor and the
client queue.

- Validation errors: permanent, never retried, surfaced as 400 with details
- Authentication errors: permanent, 401 (missing/invalid) or 403 (inactive)
- Transient infrastructure errors: broker/store/cache unavailable, 503,
  retried by the caller
- Dead letters: a single consumed message that can never be processed
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class PipelineErrorCode(Enum):
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    API_KEY_MISSING = "API_KEY_MISSING"
    API_KEY_INVALID = "API_KEY_INVALID"
    API_KEY_INACTIVE = "API_KEY_INACTIVE"
    API_KEY_LOOKUP_FAILED = "API_KEY_LOOKUP_FAILED"
    LOG_UNAVAILABLE = "LOG_UNAVAILABLE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    OVERSIZED_MESSAGE = "OVERSIZED_MESSAGE"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    ALREADY_INITIALIZED = "ALREADY_INITIALIZED"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"


class PipelineError(Exception):
    """Base exception for pipeline failures."""

    http_code = 500

    def __init__(self, error_code: PipelineErrorCode, message: str, http_code: Optional[int] = None):
        self.error_code = error_code
        self.message = message
        if http_code is not None:
            self.http_code = http_code
        super().__init__(f"{error_code.value}: {message}")


class EventValidationError(PipelineError):
    """Envelope failed schema validation. Carries every failing field."""

    http_code = 400

    def __init__(self, field_errors: List[Dict[str, Any]], message: str = "Invalid payload"):
        super().__init__(PipelineErrorCode.INVALID_PAYLOAD, message)
        self.field_errors = field_errors

    @property
    def fields(self) -> List[str]:
        return [e["field"] for e in self.field_errors]


class AuthenticationError(PipelineError):
    """API key missing, unknown or inactive."""

    http_code = 401

    @property
    def title(self) -> str:
        return "Forbidden" if self.http_code == 403 else "Unauthorized"


class TransientInfrastructureError(PipelineError):
    """Log broker, store or cache unavailable. Callers retry."""

    http_code = 503


class DeadLetterError(PipelineError):
    """A consumed message that must be skipped rather than retried."""

    http_code = 422
