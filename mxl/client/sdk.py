"""
MxL SDK Context
===============
The explicit client-side context: settings, durable queue, session tracker
and periodic flusher, created once and passed to whatever captures events.

    result = SdkContext.initialize(ClientSettings(api_key="...", endpoint="https://..."))
    if result.ok:
        sdk = result.context
        sdk.track_performance("app_start", 812, unit="ms")

A second initialize while one context is live returns the existing context
with an ALREADY_INITIALIZED error instead of raising.
"""

import logging
import platform
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, Optional

from pydantic import ValidationError

from mxl.client.queue import DurableQueue
from mxl.client.scheduler import PeriodicFlusher
from mxl.client.session import SessionTracker
from mxl.client.settings import ClientSettings
from mxl.client.uploader import HttpUploader
from mxl.errors import PipelineError, PipelineErrorCode
from mxl.telemetry.models import DeviceInfo, EventType, TelemetryEvent

logger = logging.getLogger(__name__)


def default_device_info() -> DeviceInfo:
    return DeviceInfo(
        platform=platform.system() or "unknown",
        os_version=platform.release() or "unknown",
        device_model=platform.machine() or "unknown",
        app_version="unknown",
    )


@dataclass
class InitResult:
    context: Optional["SdkContext"] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.context is not None


class SdkContext:

    _guard: ClassVar[threading.Lock] = threading.Lock()
    _active: ClassVar[Optional["SdkContext"]] = None

    def __init__(
        self,
        settings: ClientSettings,
        queue: DurableQueue,
        sessions: SessionTracker,
        flusher: PeriodicFlusher,
        device_info: DeviceInfo,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.queue = queue
        self.sessions = sessions
        self.flusher = flusher
        self.device_info = device_info
        self._clock = clock
        sessions.on_session_start.append(lambda sid, uid: self._session_marker("session_start", sid, uid))
        sessions.on_session_end.append(lambda sid, uid: self._session_marker("session_end", sid, uid))
        # Opening session starts only once the markers are wired.
        sessions.start_session()

    # ============================================================
    # INITIALIZATION
    # ============================================================

    @classmethod
    def initialize(
        cls,
        settings: ClientSettings,
        uploader=None,
        start_flusher: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> InitResult:
        with cls._guard:
            if cls._active is not None:
                logger.warning("MxL SDK is already initialized")
                return InitResult(
                    context=cls._active,
                    error=PipelineError(PipelineErrorCode.ALREADY_INITIALIZED, "MxL SDK is already initialized"),
                )

            try:
                device_info = (
                    DeviceInfo.model_validate(settings.device_info)
                    if settings.device_info else default_device_info()
                )
            except ValidationError as e:
                return InitResult(error=PipelineError(PipelineErrorCode.INVALID_CONFIGURATION, f"Invalid deviceInfo: {e}"))

            uploader = uploader or HttpUploader(settings.batch_url, settings.api_key, settings.upload_timeout_seconds)
            queue = DurableQueue(
                settings.database_path,
                uploader,
                batch_size=settings.batch_size,
                max_storage_bytes=settings.max_offline_storage_bytes,
                retention_days=settings.retention_days,
                redact_before_store=settings.enable_pii_redaction,
                clock=clock,
            )
            flusher = PeriodicFlusher(queue, settings.flush_interval_seconds, settings.max_backoff_seconds)
            context = cls(settings, queue, SessionTracker(clock=clock, auto_start=False), flusher, device_info, clock)
            if start_flusher:
                flusher.start()
            cls._active = context
            logger.info("MxL SDK initialized")
            return InitResult(context=context)

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._active is not None

    def shutdown(self, flush: bool = True) -> None:
        self.flusher.stop()
        if flush:
            self.queue.flush()
        self.queue.close()
        with SdkContext._guard:
            if SdkContext._active is self:
                SdkContext._active = None

    # ============================================================
    # CAPTURE
    # ============================================================

    def capture(self, event_type: EventType, data: Dict[str, Any], session_id: Optional[str] = None) -> Optional[int]:
        """Build and enqueue one event. Capture never raises into the host app."""
        try:
            event = TelemetryEvent(
                session_id=session_id or self.sessions.session_id,
                user_id=self.sessions.user_id,
                event_type=event_type,
                timestamp=int(self._clock() * 1000),
                data=data,
                device_info=self.device_info,
            )
            return self.queue.enqueue(event)
        except Exception as e:
            logger.error(f"Error storing {event_type} event: {e}")
            return None

    def _session_marker(self, action: str, session_id: str, user_id: Optional[str]) -> None:
        self.capture(EventType.INTERACTION, {"action": action}, session_id=session_id)

    def identify(self, user_id: Optional[str]) -> None:
        self.sessions.identify(user_id)

    def track_crash(
        self,
        error: BaseException,
        fatal: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]:
        data = {
            "exceptionType": type(error).__name__,
            "message": str(error),
            "stackTrace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            "isFatal": fatal,
        }
        if context:
            data["context"] = context
        return self.capture(EventType.CRASH, data)

    def track_performance(self, metric: str, value: float, unit: str = "ms", **attributes: Any) -> Optional[int]:
        return self.capture(EventType.PERFORMANCE, {"metric": metric, "value": value, "unit": unit, **attributes})

    def track_network(
        self,
        url: str,
        method: str,
        status_code: int,
        duration_ms: float,
        request_size: int = 0,
        response_size: int = 0,
        error: Optional[str] = None,
    ) -> Optional[int]:
        data: Dict[str, Any] = {
            "url": url,
            "method": method.upper(),
            "statusCode": status_code,
            "isSuccess": 200 <= status_code < 400,
            "duration": duration_ms,
            "requestSize": request_size,
            "responseSize": response_size,
        }
        if error:
            data["error"] = error
        return self.capture(EventType.NETWORK, data)

    def track_interaction(self, action: str, target: Optional[str] = None, **attributes: Any) -> Optional[int]:
        data: Dict[str, Any] = {"action": action, **attributes}
        if target:
            data["target"] = target
        if self.sessions.current_screen:
            data.setdefault("screen", self.sessions.current_screen)
        return self.capture(EventType.INTERACTION, data)

    def track_screen(self, screen: str) -> Optional[int]:
        self.sessions.screen_shown(screen)
        return self.capture(EventType.INTERACTION, {"action": "screen_view", "screen": screen})

    def log(self, level: str, message: str, **attributes: Any) -> Optional[int]:
        return self.capture(EventType.LOG, {"level": level.lower(), "message": message, **attributes})

    def trace(self, span: str, duration_ms: float, **attributes: Any) -> Optional[int]:
        return self.capture(EventType.TRACE, {"span": span, "duration": duration_ms, **attributes})

    # ============================================================
    # LIFECYCLE SIGNALS / GDPR
    # ============================================================

    def foregrounded(self) -> None:
        self.sessions.foregrounded()

    def backgrounded(self) -> None:
        self.sessions.backgrounded()
        self.queue.request_flush()

    def delete_user_data(self, user_id: str) -> int:
        return self.queue.delete_user_records(user_id)

    def anonymize_user_data(self, user_id: str) -> str:
        anonymous_id = f"anonymous_{int(self._clock() * 1000)}"
        self.queue.anonymize_user_records(user_id, anonymous_id)
        if self.sessions.user_id == user_id:
            self.sessions.identify(anonymous_id)
        return anonymous_id
