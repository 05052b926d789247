"""
MxL Privacy Module
PII detection and redaction for client pre-redaction and server processing.
"""

from .redaction import (
    REDACTION_MARKER,
    SENSITIVE_KEY_PARTS,
    PiiKind,
    PiiMatch,
    detect,
    contains_pii,
    redact,
    redact_structured,
    is_sensitive_key,
)

__all__ = [
    "REDACTION_MARKER",
    "SENSITIVE_KEY_PARTS",
    "PiiKind",
    "PiiMatch",
    "detect",
    "contains_pii",
    "redact",
    "redact_structured",
    "is_sensitive_key",
]
