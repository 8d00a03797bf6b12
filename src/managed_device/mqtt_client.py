"""
MQTT transport for the managed device client.

Owns the broker connection, keeps a table of subscriptions (pattern -> handler)
that is replayed on every (re)connect, dispatches inbound messages on the paho
network thread, and provides the plain device event path
iot-2/evt/<event>/fmt/<format> plus device command delivery from
iot-2/cmd/<command>/fmt/<format>.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional

import paho.mqtt.client as mqtt

from managed_device.core.errors import NotConnected
from managed_device.mqtt_topics import COMMAND_WILDCARD_TOPIC, classify_command, event_topic

if TYPE_CHECKING:
    from managed_device.config import DeviceConfig

logger = logging.getLogger(__name__)

QUICKSTART_ORG_ID = "quickstart"
TOKEN_AUTH_USERNAME = "use-token-auth"

MessageHandler = Callable[[str, bytes], None]


@dataclass(frozen=True, slots=True)
class DeviceCommand:
    command: str
    format: str
    payload: bytes
    topic: str


@dataclass(slots=True)
class _Subscription:
    pattern: str
    qos: int
    handler: MessageHandler


class DeviceMQTTClient:
    """
    MQTT client for a single device identity d:<org>:<type>:<id>.

    Register handlers with subscribe() at any time; they are (re)subscribed in
    _on_connect. Handlers are called with (topic, payload bytes), one message at
    a time, in delivery order.
    """

    def __init__(
        self,
        org: str,
        device_type: str,
        device_id: str,
        auth_token: Optional[str] = None,
        *,
        host: Optional[str] = None,
        port: int = 1883,
        keepalive: int = 60,
    ) -> None:
        self.org = org
        self.device_type = device_type
        self.device_id = device_id
        self.auth_token = auth_token
        self.host = host or f"{org}.messaging.internetofthings.ibmcloud.com"
        self.port = port
        self.keepalive = keepalive

        self.client_id = f"d:{org}:{device_type}:{device_id}"
        self.on_command: Optional[Callable[[DeviceCommand], None]] = None

        self._client: Optional[mqtt.Client] = None
        self._subscriptions: list[_Subscription] = []
        self._subscriptions_lock = threading.Lock()

        if not self.is_quickstart:
            self.subscribe(COMMAND_WILDCARD_TOPIC, self._on_command_message, qos=2)

        logger.info("Device client initialized for organization: %s", org)

    @classmethod
    def from_config(cls, cfg: "DeviceConfig") -> "DeviceMQTTClient":
        return cls(
            cfg.org,
            cfg.device_type,
            cfg.device_id,
            cfg.auth_token,
            host=cfg.mqtt_host,
            port=cfg.mqtt_port,
            keepalive=cfg.mqtt_keepalive,
        )

    @property
    def is_quickstart(self) -> bool:
        return self.org == QUICKSTART_ORG_ID

    def subscribe(self, pattern: str, handler: MessageHandler, *, qos: int = 1) -> None:
        """Route messages matching pattern (MQTT wildcards allowed) to handler."""
        with self._subscriptions_lock:
            self._subscriptions.append(_Subscription(pattern, qos, handler))
        if self._client and self._client.is_connected():
            self._client.subscribe(pattern, qos=qos)
            logger.info("Subscribed: %s", pattern)

    def _handlers_for(self, topic: str) -> list[MessageHandler]:
        with self._subscriptions_lock:
            return [s.handler for s in self._subscriptions if mqtt.topic_matches_sub(s.pattern, topic)]

    def _on_connect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connect failed rc=%s", reason_code)
            return

        logger.info("Connected to MQTT broker as %s", self.client_id)

        with self._subscriptions_lock:
            patterns: dict[str, int] = {}
            for sub in self._subscriptions:
                patterns[sub.pattern] = max(sub.qos, patterns.get(sub.pattern, 0))
        for pattern, qos in patterns.items():
            client.subscribe(pattern, qos=qos)
            logger.info("Subscribed: %s", pattern)

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None
    ) -> None:
        if reason_code.is_failure:
            logger.warning("Unexpected disconnect rc=%s", reason_code)
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        handlers = self._handlers_for(msg.topic)
        if not handlers:
            logger.warning("Unhandled topic: %s", msg.topic)
            return
        logger.debug("Message received on topic %s with payload %r", msg.topic, msg.payload)
        for handler in handlers:
            try:
                handler(msg.topic, msg.payload)
            except Exception:
                logger.exception("Handler failed for topic %s", msg.topic)

    def _on_command_message(self, topic: str, payload: bytes) -> None:
        parsed = classify_command(topic)
        if parsed is None:
            return
        command, fmt = parsed
        if self.on_command is not None:
            self.on_command(DeviceCommand(command=command, format=fmt, payload=payload, topic=topic))

    def connect(self) -> bool:
        try:
            client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                protocol=mqtt.MQTTv311,
            )
            if not self.is_quickstart:
                client.username_pw_set(TOKEN_AUTH_USERNAME, self.auth_token)

            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message

            client.connect(self.host, self.port, keepalive=self.keepalive)
            client.loop_start()

            self._client = client
            return True
        except Exception:
            logger.exception("Failed to connect to MQTT broker %s:%s", self.host, self.port)
            return False

    def disconnect(self) -> None:
        if not self._client:
            return
        try:
            self._client.loop_stop()
            self._client.disconnect()
        finally:
            self._client = None

    def is_connected(self) -> bool:
        return bool(self._client and self._client.is_connected())

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any:
        if not self._client:
            raise NotConnected("MQTT client not connected")
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        return self._client.publish(topic, payload=payload, qos=qos, retain=retain)

    def publish_event(self, event: str, fmt: str, payload: Any, qos: int = 0) -> Any:
        """Fire-and-forget device event; no correlation."""
        if not self.is_connected():
            logger.error("Client is not connected")
            raise NotConnected("client is not connected")
        topic = event_topic(event, fmt)
        logger.info("Publishing to topic %s with payload %r", topic, payload)
        return self.publish(topic, payload, qos=qos)
