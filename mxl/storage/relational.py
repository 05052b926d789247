"""
MxL Relational Store
API keys (read-mostly principal lookup) and the session side table.

Sessions are mutated by session lifecycle events and deleted by retention
90 days after they end. They are independent of event pipeline correctness.
"""

import logging
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from mxl.storage.db import db_cursor, ping as db_ping

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ApiKeyRecord:
    id: str
    key: str
    name: str
    active: bool = True
    last_used_at: Optional[datetime] = None

    @property
    def key_prefix(self) -> str:
        return self.key[:8] + "..."


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    user_id: Optional[str]
    started_at: datetime
    last_activity_at: datetime
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "startedAt": self.started_at.isoformat(),
            "lastActivityAt": self.last_activity_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
        }


class RelationalStore(ABC):

    # ----- API keys -----

    @abstractmethod
    def create_api_key(self, name: str, key: Optional[str] = None, active: bool = True) -> ApiKeyRecord: ...

    @abstractmethod
    def find_api_key(self, key: str) -> Optional[ApiKeyRecord]: ...

    @abstractmethod
    def set_api_key_active(self, key_id: str, active: bool) -> None: ...

    @abstractmethod
    def touch_api_key(self, key_id: str, at: datetime) -> None: ...

    # ----- sessions -----

    @abstractmethod
    def upsert_session(self, session_id: str, user_id: Optional[str], at: datetime) -> SessionRecord: ...

    @abstractmethod
    def end_session(self, session_id: str, at: datetime) -> None: ...

    @abstractmethod
    def sessions_for_user(self, user_id: str) -> List[SessionRecord]: ...

    @abstractmethod
    def delete_sessions_ended_before(self, cutoff: datetime) -> int: ...

    @abstractmethod
    def delete_user_sessions(self, user_id: str) -> int: ...

    @abstractmethod
    def anonymize_user_sessions(self, user_id: str, anonymous_id: str) -> int: ...

    @abstractmethod
    def active_session_count(self) -> int: ...

    @abstractmethod
    def ping(self) -> bool: ...


def generate_api_key() -> str:
    return f"mxl_{secrets.token_urlsafe(24)}"


# ============================================================
# IN-MEMORY BACKEND
# ============================================================

class InMemoryRelationalStore(RelationalStore):

    def __init__(self):
        self._keys: Dict[str, ApiKeyRecord] = {}
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self.touch_calls = 0

    def create_api_key(self, name: str, key: Optional[str] = None, active: bool = True) -> ApiKeyRecord:
        record = ApiKeyRecord(id=str(uuid.uuid4()), key=key or generate_api_key(), name=name, active=active)
        with self._lock:
            self._keys[record.key] = record
        return record

    def find_api_key(self, key: str) -> Optional[ApiKeyRecord]:
        with self._lock:
            return self._keys.get(key)

    def set_api_key_active(self, key_id: str, active: bool) -> None:
        with self._lock:
            for k, record in self._keys.items():
                if record.id == key_id:
                    self._keys[k] = replace(record, active=active)

    def touch_api_key(self, key_id: str, at: datetime) -> None:
        with self._lock:
            self.touch_calls += 1
            for k, record in self._keys.items():
                if record.id == key_id:
                    self._keys[k] = replace(record, last_used_at=at)

    def upsert_session(self, session_id: str, user_id: Optional[str], at: datetime) -> SessionRecord:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                current = SessionRecord(session_id=session_id, user_id=user_id, started_at=at, last_activity_at=at)
            else:
                current = replace(current, user_id=user_id or current.user_id, last_activity_at=at)
            self._sessions[session_id] = current
            return current

    def end_session(self, session_id: str, at: datetime) -> None:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is not None:
                self._sessions[session_id] = replace(current, ended_at=at, last_activity_at=at)

    def sessions_for_user(self, user_id: str) -> List[SessionRecord]:
        with self._lock:
            return [s for s in self._sessions.values() if s.user_id == user_id]

    def delete_sessions_ended_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [k for k, s in self._sessions.items() if s.ended_at is not None and s.ended_at < cutoff]
            for k in doomed:
                del self._sessions[k]
        return len(doomed)

    def delete_user_sessions(self, user_id: str) -> int:
        with self._lock:
            doomed = [k for k, s in self._sessions.items() if s.user_id == user_id]
            for k in doomed:
                del self._sessions[k]
        return len(doomed)

    def anonymize_user_sessions(self, user_id: str, anonymous_id: str) -> int:
        with self._lock:
            hits = [k for k, s in self._sessions.items() if s.user_id == user_id]
            for k in hits:
                self._sessions[k] = replace(self._sessions[k], user_id=anonymous_id)
        return len(hits)

    def active_session_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._sessions.values() if s.ended_at is None)

    def ping(self) -> bool:
        return True


# ============================================================
# POSTGRES BACKEND
# ============================================================

def _key_from_row(row: Dict) -> ApiKeyRecord:
    return ApiKeyRecord(
        id=str(row["id"]),
        key=row["key"],
        name=row.get("name") or "",
        active=bool(row["active"]),
        last_used_at=row.get("last_used_at"),
    )


def _session_from_row(row: Dict) -> SessionRecord:
    return SessionRecord(
        session_id=row["session_id"],
        user_id=row.get("user_id"),
        started_at=row["started_at"],
        last_activity_at=row["last_activity_at"],
        ended_at=row.get("ended_at"),
    )


class PostgresRelationalStore(RelationalStore):

    def __init__(self, database_url: str):
        self.database_url = database_url

    def create_api_key(self, name: str, key: Optional[str] = None, active: bool = True) -> ApiKeyRecord:
        with db_cursor(self.database_url) as cur:
            cur.execute("""
                INSERT INTO api_keys (id, key, name, active)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (key) DO UPDATE SET name = EXCLUDED.name
                RETURNING id, key, name, active, last_used_at
            """, (str(uuid.uuid4()), key or generate_api_key(), name, active))
            return _key_from_row(cur.fetchone())

    def find_api_key(self, key: str) -> Optional[ApiKeyRecord]:
        with db_cursor(self.database_url) as cur:
            cur.execute(
                "SELECT id, key, name, active, last_used_at FROM api_keys WHERE key = %s",
                (key,),
            )
            row = cur.fetchone()
            return _key_from_row(row) if row else None

    def set_api_key_active(self, key_id: str, active: bool) -> None:
        with db_cursor(self.database_url) as cur:
            cur.execute("UPDATE api_keys SET active = %s WHERE id = %s", (active, key_id))

    def touch_api_key(self, key_id: str, at: datetime) -> None:
        with db_cursor(self.database_url) as cur:
            cur.execute("UPDATE api_keys SET last_used_at = %s WHERE id = %s", (at, key_id))

    def upsert_session(self, session_id: str, user_id: Optional[str], at: datetime) -> SessionRecord:
        with db_cursor(self.database_url) as cur:
            cur.execute("""
                INSERT INTO sessions (session_id, user_id, started_at, last_activity_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (session_id) DO UPDATE SET
                    user_id = COALESCE(EXCLUDED.user_id, sessions.user_id),
                    last_activity_at = EXCLUDED.last_activity_at
                RETURNING session_id, user_id, started_at, ended_at, last_activity_at
            """, (session_id, user_id, at, at))
            return _session_from_row(cur.fetchone())

    def end_session(self, session_id: str, at: datetime) -> None:
        with db_cursor(self.database_url) as cur:
            cur.execute(
                "UPDATE sessions SET ended_at = %s, last_activity_at = %s WHERE session_id = %s",
                (at, at, session_id),
            )

    def sessions_for_user(self, user_id: str) -> List[SessionRecord]:
        with db_cursor(self.database_url) as cur:
            cur.execute("""
                SELECT session_id, user_id, started_at, ended_at, last_activity_at
                FROM sessions WHERE user_id = %s ORDER BY started_at
            """, (user_id,))
            return [_session_from_row(r) for r in cur.fetchall()]

    def delete_sessions_ended_before(self, cutoff: datetime) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("DELETE FROM sessions WHERE ended_at IS NOT NULL AND ended_at < %s", (cutoff,))
            return cur.rowcount

    def delete_user_sessions(self, user_id: str) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def anonymize_user_sessions(self, user_id: str, anonymous_id: str) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("UPDATE sessions SET user_id = %s WHERE user_id = %s", (anonymous_id, user_id))
            return cur.rowcount

    def active_session_count(self) -> int:
        with db_cursor(self.database_url) as cur:
            cur.execute("SELECT COUNT(*) AS n FROM sessions WHERE ended_at IS NULL")
            row = cur.fetchone()
            return int(row["n"]) if row else 0

    def ping(self) -> bool:
        return db_ping(self.database_url)
