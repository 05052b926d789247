"""
MxL PII Redaction Engine
========================
Detects and redacts personal data in free text and structured payloads.

Used on the device (optional pre-redaction before upload) and on the server
(mandatory before any event reaches durable storage).

Rules:
- Detection kinds, in fixed order: email, phone, credit_card, ssn, ip_address
- All matches are collected, not first-match-only
- Free text is rewritten from the highest start offset to the lowest
- Map values under sensitive keys are replaced wholesale
- The marker never matches any pattern, so redaction is idempotent
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Tuple

REDACTION_MARKER = "[REDACTED]"

SENSITIVE_KEY_PARTS = (
    "email",
    "phone",
    "ssn",
    "credit",
    "card",
    "password",
    "token",
    "secret",
    "address",
    "name",
)


class PiiKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    CREDIT_CARD = "credit_card"
    SSN = "ssn"
    IP_ADDRESS = "ip_address"


# Order matters: detect() reports kinds in this precedence.
_PATTERNS: Tuple[Tuple[PiiKind, "re.Pattern[str]"], ...] = (
    (PiiKind.EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    (PiiKind.PHONE, re.compile(r"(?<!\w)(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    (PiiKind.CREDIT_CARD, re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{1,4}\b")),
    (PiiKind.SSN, re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    (PiiKind.IP_ADDRESS, re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")),
)


@dataclass(frozen=True)
class PiiMatch:
    """A single detected span."""
    kind: PiiKind
    matched_text: str
    start: int
    end: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "matchedText": self.matched_text,
            "startOffset": self.start,
            "endOffset": self.end,
        }


# ============================================================
# FREE TEXT
# ============================================================

def detect(text: str) -> List[PiiMatch]:
    """Return every PII match, grouped by kind precedence then offset."""
    matches: List[PiiMatch] = []
    if not text:
        return matches
    for kind, pattern in _PATTERNS:
        for m in pattern.finditer(text):
            matches.append(PiiMatch(kind=kind, matched_text=m.group(0), start=m.start(), end=m.end()))
    return matches


def contains_pii(text: str) -> bool:
    return any(pattern.search(text) for _, pattern in _PATTERNS)


def _merge_spans(matches: List[PiiMatch]) -> List[Tuple[int, int]]:
    """Collapse overlapping spans from different kinds into one span each."""
    spans = sorted((m.start, m.end) for m in matches)
    merged: List[Tuple[int, int]] = []
    for start, end in spans:
        if merged and start < merged[-1][1]:
            prev_start, prev_end = merged[-1]
            merged[-1] = (prev_start, max(prev_end, end))
        else:
            merged.append((start, end))
    return merged


def _redact_once(text: str) -> Tuple[str, bool]:
    spans = _merge_spans(detect(text))
    if not spans:
        return text, False
    redacted = text
    for start, end in sorted(spans, key=lambda s: s[0], reverse=True):
        redacted = redacted[:start] + REDACTION_MARKER + redacted[end:]
    return redacted, True


def redact(text: str) -> str:
    """
    Replace every detected span with the redaction marker.

    Repeats until no pattern matches. Every pattern consumes at least one
    digit or '@' and the marker contains neither, so each pass strictly
    reduces that count and the loop terminates.
    """
    if not text:
        return text
    current = text
    changed = True
    while changed:
        current, changed = _redact_once(current)
    return current


# ============================================================
# STRUCTURED DATA
# ============================================================

def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact_structured(value: Any) -> Any:
    """
    Recursively redact a JSON-like value.

    Maps: values under sensitive keys become the marker regardless of type.
    Strings: passed through redact(). Lists: element-wise.
    Other leaves (numbers, booleans, None) pass through unchanged.
    """
    if isinstance(value, str):
        return redact(value)
    if isinstance(value, Mapping):
        out: Dict[Any, Any] = {}
        for key, item in value.items():
            if is_sensitive_key(key):
                out[key] = REDACTION_MARKER
            else:
                out[key] = redact_structured(item)
        return out
    if isinstance(value, (list, tuple)):
        return [redact_structured(item) for item in value]
    return value
