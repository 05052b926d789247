"""
Client SDK Tests

- Session rotation after 30 minutes of inactivity, with start/end markers
- Guarded initialization
- track_* helpers enqueue the right event types
- Settings validation
- Periodic flusher backoff
"""

import pytest
from pydantic import ValidationError

from mxl.client.queue import FlushResult
from mxl.client.scheduler import PeriodicFlusher
from mxl.client.sdk import SdkContext
from mxl.client.session import SESSION_TIMEOUT_MS, SessionTracker
from mxl.client.settings import ClientSettings
from mxl.client.uploader import UploadResult
from mxl.errors import PipelineErrorCode


class Clock:
    def __init__(self, start=1700000000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance_ms(self, ms):
        self.now += ms / 1000.0


class RecordingUploader:
    def __init__(self):
        self.batches = []

    def upload(self, events):
        self.batches.append(events)
        return UploadResult(success=True, status_code=200)


def sequential_ids():
    counter = iter(range(1, 1000))
    return lambda: f"session-{next(counter)}"


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sdk(tmp_path, clock):
    settings = ClientSettings(
        api_key="k-123",
        endpoint="https://ingest.example.com/api/v1/",
        batch_size=1000,
        database_path=str(tmp_path / "sdk.db"),
        device_info={"platform": "iOS", "osVersion": "17.2", "deviceModel": "iPhone15,2", "appVersion": "1.0.0"},
    )
    result = SdkContext.initialize(settings, uploader=RecordingUploader(), start_flusher=False, clock=clock)
    assert result.ok
    yield result.context
    result.context.shutdown(flush=False)


def queued(sdk):
    """Queued events after the opening session_start marker."""
    return [r.event for r in sdk.queue.records()][1:]


class TestSessionTracker:

    def test_same_session_within_timeout(self, clock):
        tracker = SessionTracker(clock=clock, id_factory=sequential_ids())
        first = tracker.session_id
        clock.advance_ms(SESSION_TIMEOUT_MS - 1)
        assert tracker.foregrounded() == first

    def test_rotates_after_timeout(self, clock):
        tracker = SessionTracker(clock=clock, id_factory=sequential_ids())
        ended, started = [], []
        tracker.on_session_end.append(lambda sid, uid: ended.append(sid))
        tracker.on_session_start.append(lambda sid, uid: started.append(sid))

        clock.advance_ms(SESSION_TIMEOUT_MS + 1)
        new_id = tracker.screen_shown("Home")

        assert new_id == "session-2"
        assert ended == ["session-1"]
        assert started == ["session-2"]
        assert tracker.current_screen == "Home"

    def test_activity_keeps_session_alive(self, clock):
        tracker = SessionTracker(clock=clock, id_factory=sequential_ids())
        for _ in range(3):
            clock.advance_ms(20 * 60 * 1000)
            tracker.foregrounded()
        assert tracker.session_id == "session-1"

    def test_backgrounded_does_not_rotate(self, clock):
        tracker = SessionTracker(clock=clock, id_factory=sequential_ids())
        clock.advance_ms(SESSION_TIMEOUT_MS + 1)
        assert tracker.backgrounded() == "session-1"

    def test_end_session(self, clock):
        tracker = SessionTracker(clock=clock, id_factory=sequential_ids())
        assert tracker.end_session() == "session-1"
        assert tracker.session_id == "session-2"

    def test_identify(self, clock):
        tracker = SessionTracker(clock=clock)
        tracker.identify("user-1")
        assert tracker.user_id == "user-1"
        tracker.identify("")
        assert tracker.user_id is None


class TestInitialize:

    def test_second_initialize_returns_existing(self, sdk, tmp_path):
        settings = ClientSettings(api_key="other", endpoint="https://x.example.com",
                                  database_path=str(tmp_path / "other.db"))
        result = SdkContext.initialize(settings, uploader=RecordingUploader(), start_flusher=False)

        assert not result.ok
        assert result.context is sdk
        assert result.error.error_code == PipelineErrorCode.ALREADY_INITIALIZED
        assert SdkContext.is_initialized()

    def test_shutdown_allows_reinitialize(self, tmp_path):
        settings = ClientSettings(api_key="k", endpoint="https://x.example.com", database_path=str(tmp_path / "a.db"))
        first = SdkContext.initialize(settings, uploader=RecordingUploader(), start_flusher=False)
        first.context.shutdown(flush=False)
        assert not SdkContext.is_initialized()

        second = SdkContext.initialize(settings, uploader=RecordingUploader(), start_flusher=False)
        assert second.ok
        second.context.shutdown(flush=False)

    def test_invalid_device_info(self, tmp_path):
        settings = ClientSettings(api_key="k", endpoint="https://x.example.com",
                                  database_path=str(tmp_path / "b.db"), device_info={"platform": "iOS"})
        result = SdkContext.initialize(settings, uploader=RecordingUploader(), start_flusher=False)
        assert result.error.error_code == PipelineErrorCode.INVALID_CONFIGURATION
        assert not SdkContext.is_initialized()


class TestSettings:

    def test_https_required(self):
        with pytest.raises(ValidationError):
            ClientSettings(api_key="k", endpoint="http://plain.example.com")

    def test_batch_url(self):
        settings = ClientSettings(apiKey="k", endpoint="https://x.example.com/api/v1/")
        assert settings.batch_url == "https://x.example.com/api/v1/telemetry/batch"
        assert settings.batch_size == 50
        assert settings.flush_interval_seconds == 30.0
        assert settings.retention_days == 7


class TestTracking:

    def test_track_helpers_use_event_types(self, sdk):
        sdk.track_crash(ValueError("boom"), fatal=True)
        sdk.track_performance("app_start", 812)
        sdk.track_network("https://api.example.com/items", "get", 200, 120.5, 10, 2048)
        sdk.track_interaction("tap", target="buy")
        sdk.log("WARN", "low memory")
        sdk.trace("checkout", 33.0)

        events = queued(sdk)
        assert [e["eventType"] for e in events] == ["crash", "performance", "network", "interaction", "log", "trace"]
        crash, perf, network, interaction, log, trace = events
        assert crash["data"]["exceptionType"] == "ValueError"
        assert crash["data"]["isFatal"] is True
        assert "boom" in crash["data"]["stackTrace"]
        assert perf["data"] == {"metric": "app_start", "value": 812, "unit": "ms"}
        assert network["data"]["method"] == "GET"
        assert network["data"]["isSuccess"] is True
        assert log["data"]["level"] == "warn"
        assert trace["data"]["duration"] == 33.0
        assert all(e["deviceInfo"]["platform"] == "iOS" for e in events)

    def test_identify_sets_user_on_events(self, sdk):
        sdk.identify("user-7")
        sdk.track_interaction("tap")
        assert queued(sdk)[0]["userId"] == "user-7"

    def test_screen_recorded_on_interactions(self, sdk):
        sdk.track_screen("Cart")
        sdk.track_interaction("tap")
        events = queued(sdk)
        assert events[0]["data"] == {"action": "screen_view", "screen": "Cart"}
        assert events[1]["data"]["screen"] == "Cart"

    def test_first_session_gets_start_marker(self, sdk):
        sdk.track_interaction("tap")

        opening, tap = [r.event for r in sdk.queue.records()]
        assert opening["data"] == {"action": "session_start"}
        assert opening["sessionId"] == tap["sessionId"]

    def test_session_rotation_emits_markers(self, sdk, clock):
        sdk.track_interaction("tap")
        first_session = queued(sdk)[0]["sessionId"]

        clock.advance_ms(SESSION_TIMEOUT_MS + 1000)
        sdk.track_interaction("tap")

        actions = [(e["sessionId"], e["data"]["action"]) for e in queued(sdk)]
        assert actions[0] == (first_session, "tap")
        assert actions[1] == (first_session, "session_end")
        assert actions[2][1] == "session_start"
        assert actions[3] == (actions[2][0], "tap")
        assert actions[2][0] != first_session

    def test_capture_redacts_before_storage(self, sdk):
        sdk.log("info", "signed in as user@example.com")
        assert "user@example.com" not in queued(sdk)[0]["data"]["message"]

    def test_capture_never_raises(self, sdk):
        sdk.queue.close()
        assert sdk.track_interaction("tap") is None

    def test_gdpr_on_device(self, sdk, clock):
        sdk.identify("user-9")
        sdk.track_interaction("tap")
        anonymous_id = sdk.anonymize_user_data("user-9")

        assert anonymous_id == f"anonymous_{int(clock.now * 1000)}"
        assert queued(sdk)[0]["userId"] == anonymous_id
        assert sdk.sessions.user_id == anonymous_id
        assert sdk.delete_user_data(anonymous_id) == 1


class StubQueue:
    def __init__(self, results):
        self.results = list(results)
        self.housekeeping = 0

    def flush(self):
        return self.results.pop(0)

    def enforce_storage_limits(self):
        self.housekeeping += 1
        return 0

    def purge_uploaded(self):
        return 0


class TestPeriodicFlusher:

    def test_backoff_doubles_and_caps(self):
        failure = FlushResult(attempted=1, error="HTTP 503")
        queue = StubQueue([failure] * 10)
        flusher = PeriodicFlusher(queue, interval_seconds=30, max_backoff_seconds=200)

        delays = []
        for _ in range(4):
            flusher.tick()
            delays.append(flusher.next_delay())

        assert delays == [60, 120, 200, 200]
        assert queue.housekeeping == 4

    def test_success_resets_backoff(self):
        queue = StubQueue([FlushResult(attempted=1, error="HTTP 503"), FlushResult(attempted=1, uploaded=1)])
        flusher = PeriodicFlusher(queue, interval_seconds=30)

        flusher.tick()
        assert flusher.next_delay() == 60
        flusher.tick()
        assert flusher.consecutive_failures == 0
        assert flusher.next_delay() == 30

    def test_empty_flush_keeps_state(self):
        queue = StubQueue([FlushResult()])
        flusher = PeriodicFlusher(queue, interval_seconds=30)
        flusher.consecutive_failures = 2
        flusher.tick()
        assert flusher.consecutive_failures == 2
