"""
MxL GDPR Hooks
==============
Data-subject operations across every server-side store holding user data:
- export_user:    sessions + processed events (portability)
- delete_user:    remove sessions, events and cached session events (erasure)
- anonymize_user: replace the user id with anonymous_<epochMillis>

The session cache is keyed by session, so the user's sessions are resolved
from the relational store before they are removed there.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from mxl.storage.cache import SessionEventCache
from mxl.storage.event_store import AnalyticalStore
from mxl.storage.relational import RelationalStore

logger = logging.getLogger(__name__)

EXPORT_EVENT_LIMIT = 10000


class GdprHooks:

    def __init__(
        self,
        store: AnalyticalStore,
        relational: RelationalStore,
        session_cache: SessionEventCache,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.relational = relational
        self.session_cache = session_cache
        self._clock = clock

    def _session_ids(self, user_id: str) -> List[str]:
        ids = {s.session_id for s in self.relational.sessions_for_user(user_id)}
        ids.update(e.session_id for e in self.store.events_for_user(user_id, EXPORT_EVENT_LIMIT))
        return sorted(ids)

    def export_user(self, user_id: str) -> Dict[str, Any]:
        sessions = self.relational.sessions_for_user(user_id)
        events = self.store.events_for_user(user_id, EXPORT_EVENT_LIMIT)
        logger.info(f"Exported {len(events)} events and {len(sessions)} sessions for user {user_id}")
        return {
            "userId": user_id,
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "sessions": [s.to_dict() for s in sessions],
            "events": [e.model_dump(by_alias=True, mode="json") for e in events],
        }

    def delete_user(self, user_id: str) -> Dict[str, int]:
        session_ids = self._session_ids(user_id)
        cached = 0
        for session_id in session_ids:
            cached += self.session_cache.forget_session(session_id)
        events = self.store.delete_user(user_id)
        sessions = self.relational.delete_user_sessions(user_id)
        logger.info(f"User data deleted for user: {user_id} (events={events}, sessions={sessions})")
        return {"events": events, "sessions": sessions, "cacheEntries": cached}

    def anonymize_user(self, user_id: str) -> Dict[str, Any]:
        anonymous_id = f"anonymous_{int(self._clock() * 1000)}"
        # Cached copies still carry the real id; drop them rather than rewrite.
        for session_id in self._session_ids(user_id):
            self.session_cache.forget_session(session_id)
        events = self.store.anonymize_user(user_id, anonymous_id)
        sessions = self.relational.anonymize_user_sessions(user_id, anonymous_id)
        logger.info(f"User data anonymized for user: {user_id}")
        return {"anonymousId": anonymous_id, "events": events, "sessions": sessions}
