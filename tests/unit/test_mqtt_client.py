import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from managed_device.core.errors import NotConnected
from managed_device.mqtt_client import DeviceCommand, DeviceMQTTClient
from managed_device.mqtt_topics import COMMAND_WILDCARD_TOPIC, DM_WILDCARD_TOPIC

OK = SimpleNamespace(is_failure=False)
REFUSED = SimpleNamespace(is_failure=True)


class FakeMQTTMessage:
    def __init__(self, topic: str, payload: bytes):
        self.topic = topic
        self.payload = payload


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    ctor_calls = []

    def _ctor(*args, **kwargs):
        ctor_calls.append((args, kwargs))
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    fake._ctor_calls = ctor_calls  # test hook
    return fake


@pytest.fixture
def client(fake_paho_client):
    return DeviceMQTTClient("myorg", "sensor", "dev01", "tok", port=1883, keepalive=30)


def test_identity_and_default_host(client):
    assert client.client_id == "d:myorg:sensor:dev01"
    assert client.host == "myorg.messaging.internetofthings.ibmcloud.com"
    assert client.is_quickstart is False


def test_connect_uses_token_auth_and_starts_loop(client, fake_paho_client):
    assert client.connect() is True

    args, kwargs = fake_paho_client._ctor_calls[0]
    assert kwargs["client_id"] == "d:myorg:sensor:dev01"
    fake_paho_client.username_pw_set.assert_called_once_with("use-token-auth", "tok")
    fake_paho_client.connect.assert_called_with(client.host, 1883, keepalive=30)
    fake_paho_client.loop_start.assert_called_once()
    assert client.is_connected() is True


def test_quickstart_skips_auth_and_commands(fake_paho_client):
    c = DeviceMQTTClient("quickstart", "sensor", "dev01")
    c.connect()
    c._on_connect(fake_paho_client, None, {}, OK)

    fake_paho_client.username_pw_set.assert_not_called()
    fake_paho_client.subscribe.assert_not_called()


def test_connect_failure_returns_false(client, fake_paho_client):
    fake_paho_client.connect.side_effect = OSError("unreachable")
    assert client.connect() is False
    assert client.is_connected() is False


def test_on_connect_replays_subscriptions(client, fake_paho_client):
    client.subscribe(DM_WILDCARD_TOPIC, lambda t, p: None, qos=1)
    client.connect()
    client._on_connect(fake_paho_client, None, {}, OK)

    fake_paho_client.subscribe.assert_any_call(COMMAND_WILDCARD_TOPIC, qos=2)
    fake_paho_client.subscribe.assert_any_call(DM_WILDCARD_TOPIC, qos=1)
    assert fake_paho_client.subscribe.call_count == 2


def test_on_connect_failure_does_not_subscribe(client, fake_paho_client):
    client.connect()
    client._on_connect(fake_paho_client, None, {}, REFUSED)
    fake_paho_client.subscribe.assert_not_called()


def test_subscribe_while_connected_subscribes_immediately(client, fake_paho_client):
    client.connect()
    client.subscribe("iotdm-1/#", lambda t, p: None, qos=1)
    fake_paho_client.subscribe.assert_called_once_with("iotdm-1/#", qos=1)


def test_on_message_dispatches_by_wildcard(client, fake_paho_client):
    seen = []
    client.subscribe(DM_WILDCARD_TOPIC, lambda t, p: seen.append((t, p)))

    client._on_message(fake_paho_client, None, FakeMQTTMessage("iotdm-1/response", b'{"rc":200}'))
    client._on_message(fake_paho_client, None, FakeMQTTMessage("other/topic", b"{}"))

    assert seen == [("iotdm-1/response", b'{"rc":200}')]


def test_handler_exception_does_not_escape(client, fake_paho_client, caplog):
    def boom(topic, payload):
        raise RuntimeError("handler bug")

    seen = []
    client.subscribe(DM_WILDCARD_TOPIC, boom)
    client.subscribe(DM_WILDCARD_TOPIC, lambda t, p: seen.append(t))

    client._on_message(fake_paho_client, None, FakeMQTTMessage("iotdm-1/response", b"{}"))

    assert seen == ["iotdm-1/response"]
    assert "Handler failed" in caplog.text


def test_command_delivery(client, fake_paho_client):
    received = []
    client.on_command = received.append

    client._on_message(fake_paho_client, None, FakeMQTTMessage("iot-2/cmd/blink/fmt/json", b'{"n":3}'))

    assert received == [DeviceCommand(command="blink", format="json", payload=b'{"n":3}', topic="iot-2/cmd/blink/fmt/json")]


def test_publish_event(client, fake_paho_client):
    client.connect()
    client.publish_event("status", "json", {"temp": 21.5})

    fake_paho_client.publish.assert_called_once()
    args, kwargs = fake_paho_client.publish.call_args
    assert args[0] == "iot-2/evt/status/fmt/json"
    assert json.loads(kwargs["payload"]) == {"temp": 21.5}
    assert kwargs["qos"] == 0


def test_publish_event_requires_connection(client, fake_paho_client):
    with pytest.raises(NotConnected):
        client.publish_event("status", "json", "{}")

    client.connect()
    fake_paho_client.is_connected.return_value = False
    with pytest.raises(NotConnected):
        client.publish_event("status", "json", "{}")


def test_publish_without_client_raises(client):
    with pytest.raises(NotConnected):
        client.publish("iotdevice-1/mgmt/manage", b"{}", qos=1)


def test_disconnect_stops_loop(client, fake_paho_client):
    client.connect()
    client.disconnect()

    fake_paho_client.loop_stop.assert_called_once()
    fake_paho_client.disconnect.assert_called_once()
    assert client.is_connected() is False


def test_from_config():
    from managed_device.config import DeviceConfig

    cfg = DeviceConfig(
        org="myorg",
        device_type="sensor",
        device_id="dev01",
        auth_method="token",
        auth_token="tok",
        mqtt_host="broker.local",
        mqtt_port=8883,
        mqtt_keepalive=45,
        log_level=None,
    )
    c = DeviceMQTTClient.from_config(cfg)
    assert c.host == "broker.local"
    assert c.port == 8883
    assert c.keepalive == 45
    assert c.auth_token == "tok"


def test_engine_over_transport_end_to_end(client, fake_paho_client):
    from managed_device.managed_client import ManagedDeviceClient

    device = ManagedDeviceClient(client)
    responses = []
    device.on_dm_response = responses.append
    client.connect()

    req_id = device.manage(lifetime=3600)
    topic, payload = fake_paho_client.publish.call_args.args[0], fake_paho_client.publish.call_args.kwargs["payload"]
    assert topic == "iotdevice-1/mgmt/manage"
    assert json.loads(payload)["reqId"] == req_id

    body = json.dumps({"rc": 200, "reqId": req_id}).encode()
    client._on_message(fake_paho_client, None, FakeMQTTMessage("iotdm-1/response", body))

    assert [r.correlation_id for r in responses] == [req_id]
    assert len(device.outbound) == 0


def test_engine_rejects_quickstart_transport(fake_paho_client):
    from managed_device.core.errors import InvalidArgument
    from managed_device.managed_client import ManagedDeviceClient

    with pytest.raises(InvalidArgument, match="quickstart"):
        ManagedDeviceClient(DeviceMQTTClient("quickstart", "sensor", "dev01"))
