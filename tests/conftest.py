"""
Pytest configuration and shared fixtures
"""
import json
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'DEVICE_ORG': 'myorg',
        'DEVICE_TYPE': 'sensor',
        'DEVICE_ID': 'dev01',
        'DEVICE_AUTH_METHOD': 'token',
        'DEVICE_AUTH_TOKEN': 'test-token',
    }
    for key in ('MQTT_HOST', 'MQTT_PORT', 'MQTT_KEEPALIVE', 'DEVICE_LOG_LEVEL'):
        monkeypatch.delenv(key, raising=False)
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def transport():
    """Connected transport double; publish calls are recorded by the mock."""
    t = MagicMock()
    t.is_connected.return_value = True
    t.is_quickstart = False
    return t


@pytest.fixture
def encode_response():
    """Build a controller-side response as delivered on iotdm-1/response."""
    def _encode(correlation_id: str, rc: int) -> bytes:
        return json.dumps({"rc": rc, "reqId": correlation_id}).encode("utf-8")
    return _encode


@pytest.fixture
def published(transport):
    """Decoded (topic, payload) pairs published through the transport double."""
    def _published(topic=None):
        out = []
        for call in transport.publish.call_args_list:
            t, payload = call.args[0], call.args[1]
            if topic is None or t == topic:
                out.append((t, json.loads(payload)))
        return out
    return _published
