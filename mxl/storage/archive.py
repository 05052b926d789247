"""
MxL Cold Archive
Writes aged processed events to cold object storage as compressed batches.

Batch layout: gzip-compressed JSON lines, one processed event per line, with
a sidecar manifest carrying the row count, time range and digest.
"""

import gzip
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from mxl.shared.hashing import digest_bytes, extract_hash_digest
from mxl.telemetry.models import ProcessedEvent

logger = logging.getLogger(__name__)


@dataclass
class ArchiveBatch:
    key: str
    payload: bytes
    row_count: int
    first_server_timestamp: int
    last_server_timestamp: int
    digest: str

    def manifest(self) -> dict:
        return {
            "key": self.key,
            "rowCount": self.row_count,
            "firstServerTimestamp": self.first_server_timestamp,
            "lastServerTimestamp": self.last_server_timestamp,
            "digest": self.digest,
            "compression": "gzip",
            "format": "jsonl",
        }


def build_batch(events: List[ProcessedEvent]) -> Optional[ArchiveBatch]:
    """Serialize and compress events. Returns None for an empty list."""
    if not events:
        return None
    lines = [
        json.dumps(e.model_dump(by_alias=True, mode="json"), sort_keys=True, separators=(",", ":"))
        for e in events
    ]
    payload = gzip.compress(("\n".join(lines) + "\n").encode("utf-8"))
    first = min(e.server_timestamp for e in events)
    last = max(e.server_timestamp for e in events)
    day = datetime.fromtimestamp(first / 1000, tz=timezone.utc)
    digest = digest_bytes(payload)
    key = f"telemetry/{day:%Y/%m/%d}/batch-{first}-{last}-{extract_hash_digest(digest)[:12]}.jsonl.gz"
    return ArchiveBatch(
        key=key,
        payload=payload,
        row_count=len(events),
        first_server_timestamp=first,
        last_server_timestamp=last,
        digest=digest,
    )


def read_batch(payload: bytes) -> List[ProcessedEvent]:
    text = gzip.decompress(payload).decode("utf-8")
    return [ProcessedEvent.model_validate(json.loads(line)) for line in text.splitlines() if line]


class ColdArchive(ABC):
    """Object storage for archive batches."""

    @abstractmethod
    def put(self, batch: ArchiveBatch) -> None: ...

    @abstractmethod
    def get(self, key: str) -> bytes: ...

    @abstractmethod
    def list_keys(self, prefix: str = "") -> List[str]: ...


class FilesystemArchive(ColdArchive):
    """Object storage rooted in a local directory (or a mounted bucket)."""

    def __init__(self, root: str):
        self.root = Path(root)

    def put(self, batch: ArchiveBatch) -> None:
        path = self.root / batch.key
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(batch.payload)
        tmp.replace(path)
        manifest_path = path.with_name(path.name + ".manifest.json")
        manifest_path.write_text(json.dumps(batch.manifest(), indent=2))
        logger.info(f"Archived {batch.row_count} events to {batch.key}")

    def get(self, key: str) -> bytes:
        return (self.root / key).read_bytes()

    def list_keys(self, prefix: str = "") -> List[str]:
        if not self.root.exists():
            return []
        keys = [
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob("*.jsonl.gz")
        ]
        return sorted(k for k in keys if k.startswith(prefix))
