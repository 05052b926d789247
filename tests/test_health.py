"""
Health Endpoint Tests

- /health liveness
- /ready reports per-dependency status; 503 when any is down
- /metrics text exposition
"""

from unittest.mock import patch


class TestHealth:

    def test_liveness(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["timestamp"].endswith("Z")
        assert body["uptime"] >= 0

    def test_no_api_key_needed(self, client):
        assert client.get("/health").status_code == 200
        assert client.get("/ready").status_code == 200


class TestReadiness:

    def test_ready(self, client, pipeline):
        response = client.get("/ready")
        body = response.json()

        assert response.status_code == 200
        assert body["ready"] is True
        assert set(body["components"]) == {"log_broker", "analytical_store", "cache", "relational_store"}
        assert pipeline.metrics.gauge_value("pipeline_ready") == 1

    def test_store_down_503(self, client, pipeline):
        with patch.object(pipeline.store, "ping", side_effect=ConnectionError("refused")):
            response = client.get("/ready")

        body = response.json()
        assert response.status_code == 503
        assert body["status"] == "not_ready"
        assert body["components"]["analytical_store"] == {"status": "error", "error": "refused"}
        assert body["components"]["cache"]["status"] == "healthy"

    def test_failed_ping_503(self, client, pipeline):
        with patch.object(pipeline.log, "ping", return_value=False):
            assert client.get("/ready").status_code == 503


class TestMetricsEndpoint:

    def test_exposition(self, client, pipeline, api_key, make_payload):
        client.post("/telemetry", json=make_payload("crash"), headers={"x-api-key": api_key})
        pipeline.consumers.drain()

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        text = response.text
        assert 'telemetry_events_received_total{event_type="crash",origin="single"} 1' in text
        assert 'telemetry_events_processed_total{event_type="crash"} 1' in text
        assert "stored_events 1" in text
        assert "active_sessions 1" in text
