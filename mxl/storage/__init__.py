"""
MxL Storage Module
Analytical store, fast cache, relational store and cold archive.
"""

from .event_store import AnalyticalStore, InMemoryAnalyticalStore, PostgresAnalyticalStore
from .cache import TtlCache, SessionEventCache
from .relational import (
    ApiKeyRecord,
    SessionRecord,
    RelationalStore,
    InMemoryRelationalStore,
    PostgresRelationalStore,
)
from .archive import ArchiveBatch, ColdArchive, FilesystemArchive, build_batch, read_batch

__all__ = [
    "AnalyticalStore",
    "InMemoryAnalyticalStore",
    "PostgresAnalyticalStore",
    "TtlCache",
    "SessionEventCache",
    "ApiKeyRecord",
    "SessionRecord",
    "RelationalStore",
    "InMemoryRelationalStore",
    "PostgresRelationalStore",
    "ArchiveBatch",
    "ColdArchive",
    "FilesystemArchive",
    "build_batch",
    "read_batch",
]
