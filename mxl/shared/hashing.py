"""
MxL Canonical Hashing Layer
Single source of truth for all hash operations (fingerprints, content hashes,
archive digests).
"""

import hashlib
import json
from typing import Any, FrozenSet, Optional

# Fields excluded from content hashes (assigned by the server, not the client)
VOLATILE_FIELDS = frozenset([
    "serverTimestamp",
    "serverTime",
    "enriched",
    "metrics",
    "contentHash",
])


def canonicalize(obj: Any, exclude: Optional[FrozenSet[str]] = VOLATILE_FIELDS) -> str:
    """
    Convert object to canonical JSON string.
    Deterministic: same input always produces same output.
    """
    excluded = exclude or frozenset()

    def _clean(o: Any) -> Any:
        if isinstance(o, dict):
            return {
                k: _clean(v)
                for k, v in sorted(o.items())
                if k not in excluded
            }
        elif isinstance(o, (list, tuple)):
            return [_clean(i) for i in o]
        elif isinstance(o, float):
            # Normalize floats to avoid precision issues
            return round(o, 10)
        return o

    cleaned = _clean(obj)
    return json.dumps(cleaned, sort_keys=True, separators=(',', ':'), ensure_ascii=True)


def canonicalize_and_hash(obj: Any, exclude: Optional[FrozenSet[str]] = VOLATILE_FIELDS) -> str:
    """
    Canonical hash used across the pipeline.
    Returns: "sha256:<64-char-hex>"
    """
    canonical = canonicalize(obj, exclude)
    digest = hashlib.sha256(canonical.encode('utf-8')).hexdigest()
    return f"sha256:{digest}"


def digest_bytes(payload: bytes) -> str:
    """Hash raw bytes (compressed archive batches)."""
    return f"sha256:{hashlib.sha256(payload).hexdigest()}"


def extract_hash_digest(full_hash: str) -> str:
    """
    Extract raw digest from prefixed hash.
    "sha256:abc123..." -> "abc123..."
    """
    if full_hash.startswith("sha256:"):
        return full_hash[7:]
    return full_hash


def stable_bucket(key: str, buckets: int) -> int:
    """Map a key onto [0, buckets) independent of interpreter hash seeding."""
    if buckets <= 1:
        return 0
    digest = hashlib.md5(key.encode('utf-8')).digest()
    return int.from_bytes(digest[:8], "big") % buckets
