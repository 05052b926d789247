"""
Ingestion Boundary Tests

- API key: missing/unknown -> 401, inactive -> 403, lookup failure -> 500
- last_used_at updated exactly once per authenticated request
- Validation: 400 with field errors
- Single and batch submissions land on the per-type topics
- Log unavailable -> 503, nothing acknowledged
- End to end: batch of 2 -> 2 redacted processed events after draining
"""

from unittest.mock import MagicMock, patch

import pytest

from mxl.errors import AuthenticationError
from mxl.ingestion.auth import authenticate, extract_api_key
from mxl.storage.relational import InMemoryRelationalStore


class TestApiKeyExtraction:

    def test_bearer(self):
        assert extract_api_key({"authorization": "Bearer abc"}) == "abc"

    def test_plain_authorization(self):
        assert extract_api_key({"authorization": "abc"}) == "abc"

    def test_custom_header(self):
        assert extract_api_key({"x-mxl-key": "abc"}, "X-MxL-Key") == "abc"

    def test_absent(self):
        assert extract_api_key({}) is None
        assert extract_api_key({"authorization": "Bearer "}) is None


class TestAuthenticate:

    def test_lookup_failure_is_500(self):
        store = MagicMock()
        store.find_api_key.side_effect = RuntimeError("db down")
        with pytest.raises(AuthenticationError) as exc_info:
            authenticate(store, "key")
        assert exc_info.value.http_code == 500

    def test_touch_failure_does_not_reject(self):
        store = InMemoryRelationalStore()
        record = store.create_api_key("k")
        with patch.object(store, "touch_api_key", side_effect=RuntimeError("write failed")):
            assert authenticate(store, record.key).id == record.id


class TestAuthEndpoints:

    def test_missing_key_401(self, client, make_payload):
        response = client.post("/telemetry", json=make_payload())
        assert response.status_code == 401
        assert response.json()["success"] is False
        assert response.json()["error"] == "Unauthorized"

    def test_unknown_key_401(self, client, make_payload):
        response = client.post("/telemetry", json=make_payload(), headers={"x-api-key": "nope"})
        assert response.status_code == 401

    def test_inactive_key_403(self, client, pipeline, make_payload):
        record = pipeline.relational.create_api_key("old", active=False)
        response = client.post("/telemetry", json=make_payload(), headers={"Authorization": f"Bearer {record.key}"})
        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"

    def test_valid_key_touched_exactly_once(self, client, pipeline, api_key, make_payload):
        before = pipeline.relational.touch_calls
        response = client.post("/telemetry", json=make_payload(), headers={"x-api-key": api_key})
        assert response.status_code == 200
        assert pipeline.relational.touch_calls == before + 1
        assert pipeline.relational.find_api_key(api_key).last_used_at is not None

    def test_auth_checked_before_validation(self, client):
        response = client.post("/telemetry", json={"garbage": True})
        assert response.status_code == 401


class TestSingleEvent:

    def test_accepted(self, client, pipeline, api_key, make_payload):
        response = client.post(
            "/telemetry",
            json=make_payload("crash"),
            headers={"Authorization": f"Bearer {api_key}", "user-agent": "okhttp/4.12.0", "x-screen-width": "1080"},
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Telemetry received"}

        messages = pipeline.log.messages("telemetry-crash")
        assert len(messages) == 1
        assert messages[0].key == "session-1"
        assert '"origin":"single"' in messages[0].value
        assert '"width":"1080"' in messages[0].value

    def test_versioned_prefix(self, client, api_key, make_payload):
        response = client.post("/api/v1/telemetry", json=make_payload(), headers={"x-api-key": api_key})
        assert response.status_code == 200

    def test_validation_error_400(self, client, api_key, make_payload):
        response = client.post(
            "/telemetry",
            json=make_payload(eventType="unknown"),
            headers={"x-api-key": api_key},
        )
        body = response.json()
        assert response.status_code == 400
        assert body["success"] is False
        assert body["error"] == "Invalid payload"
        assert [d["field"] for d in body["details"]] == ["eventType"]

    def test_invalid_json_400(self, client, api_key):
        response = client.post(
            "/telemetry",
            content=b"{not json",
            headers={"x-api-key": api_key, "content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["details"][0]["field"] == "body"

    def test_log_unavailable_503(self, client, pipeline, api_key, make_payload):
        with patch.object(pipeline.log, "publish", side_effect=ConnectionError("broker down")):
            response = client.post("/telemetry", json=make_payload(), headers={"x-api-key": api_key})
        assert response.status_code == 503
        assert response.json()["success"] is False
        assert pipeline.log.messages("telemetry-interaction") == []


class TestBatch:

    def test_batch_of_two_types(self, client, pipeline, api_key, make_payload):
        batch = {"events": [
            make_payload("crash", data={"exceptionType": "NullPointerException", "email": "user@example.com"}),
            make_payload("network", data={"url": "https://api.example.com", "duration": 203, "requestSize": 10, "responseSize": 90}),
        ]}
        response = client.post("/telemetry/batch", json=batch, headers={"x-api-key": api_key})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "2" in body["message"]
        assert len(pipeline.log.messages("telemetry-crash")) == 1
        assert len(pipeline.log.messages("telemetry-network")) == 1

        result = pipeline.consumers.drain()
        stored = pipeline.store.all_events()

        assert result.processed == 2
        assert len(stored) == 2
        by_type = {e.event_type: e for e in stored}
        assert by_type["crash"].data["email"] == "[REDACTED]"
        assert "user@example.com" not in by_type["crash"].model_dump_json()
        assert by_type["network"].metrics == {"network_duration": 203.0, "network_size": 100.0}
        assert "receivedAt" in by_type["network"].enriched

    def test_one_invalid_event_rejects_batch(self, client, pipeline, api_key, make_payload):
        batch = {"events": [make_payload(), make_payload(deviceInfo={})]}
        response = client.post("/telemetry/batch", json=batch, headers={"x-api-key": api_key})

        assert response.status_code == 400
        fields = [d["field"] for d in response.json()["details"]]
        assert "events.1.deviceInfo.platform" in fields
        assert pipeline.log.messages("telemetry-interaction") == []

    def test_batch_metrics_counted(self, client, pipeline, api_key, make_payload):
        batch = {"events": [make_payload(), make_payload(session_id="s2")]}
        client.post("/telemetry/batch", json=batch, headers={"x-api-key": api_key})
        assert pipeline.metrics.counter_value(
            "telemetry_events_received_total", {"event_type": "interaction", "origin": "batch"}
        ) == 2


class TestEndToEndRedaction:

    def test_single_event_email_redacted_in_store(self, client, pipeline, api_key, make_payload):
        payload = make_payload("log", data={"email": "user@example.com", "message": "login by user@example.com"})
        client.post("/telemetry", json=payload, headers={"x-api-key": api_key})

        pipeline.consumers.drain()
        stored = pipeline.store.all_events()

        assert len(stored) == 1
        assert stored[0].data["email"] == "[REDACTED]"
        assert "user@example.com" not in stored[0].model_dump_json()
        assert stored[0].content_hash.startswith("sha256:")

    def test_email_user_id_redacted_in_store_and_cache(self, client, pipeline, api_key, make_payload):
        payload = make_payload("log", userId="user@example.com", data={"email": "user@example.com"})
        client.post("/telemetry", json=payload, headers={"x-api-key": api_key})

        pipeline.consumers.drain()
        stored = pipeline.store.all_events()

        assert len(stored) == 1
        assert stored[0].user_id == "[REDACTED]"
        assert "user@example.com" not in stored[0].model_dump_json()
        cached = pipeline.session_cache.cached_event("session-1", stored[0].event_id)
        assert "user@example.com" not in cached.model_dump_json()

    def test_batch_user_id_redacted(self, client, pipeline, api_key, make_payload):
        batch = {"events": [make_payload(userId="user@example.com"), make_payload(userId="user-7")]}
        client.post("/telemetry/batch", json=batch, headers={"x-api-key": api_key})

        pipeline.consumers.drain()

        assert sorted(e.user_id for e in pipeline.store.all_events()) == ["[REDACTED]", "user-7"]
