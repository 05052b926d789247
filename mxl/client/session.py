"""
MxL Session Tracker
Session boundaries from discrete app lifecycle signals.

Signals: foregrounded, backgrounded, screen_shown. A session whose last
activity is more than 30 minutes old is ended and replaced on the next signal.
"""

import threading
import time
import uuid
from enum import Enum
from typing import Callable, List, Optional

SESSION_TIMEOUT_MS = 30 * 60 * 1000


class LifecycleSignal(str, Enum):
    FOREGROUNDED = "foregrounded"
    BACKGROUNDED = "backgrounded"
    SCREEN_SHOWN = "screen_shown"


SessionListener = Callable[[str, Optional[str]], None]


class SessionTracker:

    def __init__(
        self,
        timeout_ms: int = SESSION_TIMEOUT_MS,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        auto_start: bool = True,
    ):
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._id_factory = id_factory
        self._lock = threading.Lock()
        self._session_id: Optional[str] = None
        self._started_at = 0
        self._last_activity = 0
        self._user_id: Optional[str] = None
        self.on_session_start: List[SessionListener] = []
        self.on_session_end: List[SessionListener] = []
        self.current_screen: Optional[str] = None
        if auto_start:
            self.start_session()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ============================================================
    # LIFECYCLE
    # ============================================================

    def start_session(self) -> str:
        """Rotate if the current session timed out; return the live session id."""
        ended: Optional[str] = None
        started: Optional[str] = None
        with self._lock:
            now = self._now_ms()
            if self._session_id is not None and now - self._last_activity > self.timeout_ms:
                ended = self._session_id
                self._session_id = None
            if self._session_id is None:
                self._session_id = self._id_factory()
                self._started_at = now
                started = self._session_id
            self._last_activity = now
            session_id = self._session_id
            user_id = self._user_id

        if ended is not None:
            for listener in self.on_session_end:
                listener(ended, user_id)
        if started is not None:
            for listener in self.on_session_start:
                listener(started, user_id)
        return session_id

    def end_session(self) -> Optional[str]:
        with self._lock:
            ended, user_id = self._session_id, self._user_id
            self._session_id = None
            self._started_at = 0
            self._last_activity = 0
        if ended is not None:
            for listener in self.on_session_end:
                listener(ended, user_id)
        return ended

    def handle(self, signal: LifecycleSignal, screen: Optional[str] = None) -> str:
        if signal == LifecycleSignal.SCREEN_SHOWN and screen:
            self.current_screen = screen
        if signal == LifecycleSignal.BACKGROUNDED:
            with self._lock:
                self._last_activity = self._now_ms()
                if self._session_id is not None:
                    return self._session_id
        return self.start_session()

    def foregrounded(self) -> str:
        return self.handle(LifecycleSignal.FOREGROUNDED)

    def backgrounded(self) -> str:
        return self.handle(LifecycleSignal.BACKGROUNDED)

    def screen_shown(self, screen: str) -> str:
        return self.handle(LifecycleSignal.SCREEN_SHOWN, screen)

    # ============================================================
    # IDENTITY
    # ============================================================

    @property
    def session_id(self) -> str:
        """The live session id, rotating first if the session timed out."""
        return self.start_session()

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def identify(self, user_id: Optional[str]) -> None:
        with self._lock:
            self._user_id = user_id or None
