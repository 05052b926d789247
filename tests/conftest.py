"""
Shared fixtures: an in-memory pipeline, an app around it and payload factories.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient

from api_server import create_app
from mxl.config import Settings
from mxl.context import build_context


@pytest.fixture
def settings():
    return Settings(log_partitions=4)


@pytest.fixture
def pipeline(settings):
    return build_context(settings)


@pytest.fixture
def api_key(pipeline):
    return pipeline.relational.create_api_key("test-key").key


@pytest.fixture
def client(pipeline):
    return TestClient(create_app(pipeline))


@pytest.fixture
def make_payload():
    """Factory for valid wire-format event dicts."""
    def _make(event_type="interaction", session_id="session-1", **overrides):
        payload = {
            "sessionId": session_id,
            "userId": "user-42",
            "eventType": event_type,
            "timestamp": 1700000000000,
            "data": {"action": "tap", "target": "checkout_button"},
            "deviceInfo": {
                "platform": "Android",
                "osVersion": "14",
                "deviceModel": "Pixel 8",
                "appVersion": "2.3.1",
            },
        }
        payload.update(overrides)
        return payload
    return _make
