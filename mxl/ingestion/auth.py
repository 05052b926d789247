"""
MxL API Key Authentication
==========================
Resolves the API-key principal for ingestion and GDPR routes.

Accepted headers, in order:
- Authorization: Bearer <key>
- Authorization: <key>           (plain key)
- <API_KEY_HEADER>: <key>        (default x-api-key)

Missing or unknown key -> 401, inactive key -> 403.
A successful lookup updates last_used_at exactly once per request.
"""

import logging
from typing import Mapping, Optional

from fastapi import Request

from mxl.errors import AuthenticationError, PipelineErrorCode
from mxl.storage.relational import ApiKeyRecord, RelationalStore, utcnow

logger = logging.getLogger(__name__)


def extract_api_key(headers: Mapping[str, str], api_key_header: str = "x-api-key") -> Optional[str]:
    """Pull the raw key out of request headers. Returns None when absent."""
    auth_header = headers.get("authorization")
    if auth_header:
        if auth_header.startswith("Bearer "):
            key = auth_header[7:].strip()
        else:
            key = auth_header.strip()
        if key:
            return key
    key = headers.get(api_key_header.lower())
    return key.strip() if key and key.strip() else None


def authenticate(store: RelationalStore, api_key: Optional[str], path: str = "", method: str = "") -> ApiKeyRecord:
    """Validate a raw key against the store and record its use."""
    if not api_key:
        logger.warning(f"API key missing in request ({method} {path})")
        raise AuthenticationError(
            PipelineErrorCode.API_KEY_MISSING,
            "API key is required. Provide it in Authorization header (Bearer <key>) or x-api-key header.",
            http_code=401,
        )

    try:
        record = store.find_api_key(api_key)
    except Exception as e:
        logger.error(f"Error validating API key: {e}")
        raise AuthenticationError(
            PipelineErrorCode.API_KEY_LOOKUP_FAILED,
            "Error validating API key",
            http_code=500,
        )

    if record is None:
        logger.warning(f"Invalid API key provided ({method} {path}) prefix={api_key[:8]}...")
        raise AuthenticationError(PipelineErrorCode.API_KEY_INVALID, "Invalid API key", http_code=401)

    if not record.active:
        logger.warning(f"Inactive API key used ({method} {path}) key_id={record.id}")
        raise AuthenticationError(PipelineErrorCode.API_KEY_INACTIVE, "API key is inactive", http_code=403)

    try:
        store.touch_api_key(record.id, utcnow())
    except Exception as e:
        # Usage tracking must not reject an otherwise valid request.
        logger.error(f"Error updating API key last used timestamp: {e}")

    return record


def require_api_key(request: Request) -> ApiKeyRecord:
    """FastAPI dependency. Attaches the principal to request.state.api_key."""
    context = request.app.state.pipeline
    key = extract_api_key(request.headers, context.settings.api_key_header)
    record = authenticate(context.relational, key, request.url.path, request.method)
    request.state.api_key = record
    return record
