"""
Managed device client: device-management protocol engine.

Device → controller: manage, unmanage, update location, diagnostics
(error codes, log entries). Each request carries a fresh reqId and stays
pending in the outbound table until iotdm-1/response answers it.

Controller → device: iotdm-1/mgmt/initiate/<category>/<verb>. Each request is
held in the inbound table until the application accepts (rc 202) or rejects
(rc 500) it via respond_device_action().
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from managed_device.core.correlation import (
    InboundActionRequest,
    InboundCorrelationTable,
    OutboundCorrelationTable,
    OutboundRequest,
)
from managed_device.core.envelope import (
    RC_OK,
    ErrorCodeBody,
    LocationBody,
    LogBody,
    ManageBody,
    RequestBody,
    decode_action_request,
    decode_response,
    encode_ack,
    encode_request,
)
from managed_device.core.errors import InvalidArgument, ManagedDeviceError, NotConnected
from managed_device.mqtt_topics import ACK_TOPIC, DM_WILDCARD_TOPIC, Operation, TopicKind, classify

logger = logging.getLogger(__name__)

QOS = 1
MIN_LIFETIME_S = 3600
LOG_SEVERITIES = (0, 1, 2)


class Transport(Protocol):
    """Connection the engine publishes through and receives from."""

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any:
        ...

    def subscribe(self, pattern: str, handler: Callable[[str, bytes], None], *, qos: int = 1) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    @property
    def is_quickstart(self) -> bool:
        ...


@dataclass(frozen=True, slots=True)
class DmResponse:
    correlation_id: str
    result_code: int

    @property
    def ok(self) -> bool:
        return self.result_code == RC_OK


@dataclass(frozen=True, slots=True)
class DmAction:
    correlation_id: str
    action: str
    body: Any = None


@dataclass(frozen=True, slots=True)
class DmError:
    topic: str
    error: ManagedDeviceError


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class ManagedDeviceClient:
    """
    Device-management protocol engine over a Transport.

    Notifications are plain callables set as attributes:
      on_dm_response(DmResponse), on_dm_action(DmAction), on_dm_error(DmError).
    They are invoked from the transport's delivery thread, outside the table lock.
    """

    def __init__(self, transport: Transport) -> None:
        if transport.is_quickstart:
            raise InvalidArgument("cannot use quickstart for a managed device")
        self.transport = transport

        self.on_dm_response: Optional[Callable[[DmResponse], None]] = None
        self.on_dm_action: Optional[Callable[[DmAction], None]] = None
        self.on_dm_error: Optional[Callable[[DmError], None]] = None

        self._outbound = OutboundCorrelationTable()
        self._inbound = InboundCorrelationTable()
        self._lock = threading.RLock()

        transport.subscribe(DM_WILDCARD_TOPIC, self.handle_message, qos=QOS)

    @property
    def outbound(self) -> OutboundCorrelationTable:
        return self._outbound

    @property
    def inbound(self) -> InboundCorrelationTable:
        return self._inbound

    # -------------------------
    # Device-initiated requests
    # -------------------------
    def _require_connected(self) -> None:
        if not self.transport.is_connected():
            raise NotConnected("client must be connected")

    def _send(self, operation: Operation, body: Optional[RequestBody] = None) -> str:
        correlation_id, payload = encode_request(body)
        with self._lock:
            self._outbound.register(correlation_id, operation.topic, payload)

        logger.info("Publishing %s request with payload: %s", operation.label.lower(), payload.decode("utf-8"))
        try:
            self.transport.publish(operation.topic, payload, qos=QOS)
        except Exception:
            with self._lock:
                self._outbound.discard(correlation_id)
            raise
        return correlation_id

    def manage(
        self,
        lifetime: Optional[float] = None,
        supports_device_actions: Optional[bool] = None,
        supports_firmware_actions: Optional[bool] = None,
    ) -> str:
        self._require_connected()

        if lifetime is not None:
            if not _is_number(lifetime):
                raise InvalidArgument("lifetime must be a finite number")
            if lifetime < MIN_LIFETIME_S:
                raise InvalidArgument(f"lifetime cannot be less than {MIN_LIFETIME_S}")
        if supports_device_actions is not None and not isinstance(supports_device_actions, bool):
            raise InvalidArgument("supports_device_actions must be a boolean")
        if supports_firmware_actions is not None and not isinstance(supports_firmware_actions, bool):
            raise InvalidArgument("supports_firmware_actions must be a boolean")

        body = ManageBody(
            lifetime=lifetime,
            supports_device_actions=supports_device_actions,
            supports_firmware_actions=supports_firmware_actions,
        )
        return self._send(Operation.MANAGE, body)

    def unmanage(self) -> str:
        self._require_connected()
        return self._send(Operation.UNMANAGE)

    def update_location(
        self,
        longitude: float,
        latitude: float,
        elevation: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> str:
        self._require_connected()

        if longitude is None or latitude is None:
            raise InvalidArgument("longitude and latitude are required for updating location")
        if not _is_number(longitude) or not _is_number(latitude):
            raise InvalidArgument("longitude and latitude must be finite numbers")
        if not -180 <= longitude <= 180:
            raise InvalidArgument("longitude cannot be less than -180 or greater than 180")
        if not -90 <= latitude <= 90:
            raise InvalidArgument("latitude cannot be less than -90 or greater than 90")
        if elevation is not None and not _is_number(elevation):
            raise InvalidArgument("elevation must be a finite number")
        if accuracy is not None and not _is_number(accuracy):
            raise InvalidArgument("accuracy must be a finite number")

        body = LocationBody(longitude=longitude, latitude=latitude, elevation=elevation, accuracy=accuracy)
        return self._send(Operation.UPDATE_LOCATION, body)

    def add_error_code(self, error_code: int) -> str:
        self._require_connected()

        if error_code is None:
            raise InvalidArgument("error code is required for adding an error code")
        if not isinstance(error_code, int) or isinstance(error_code, bool):
            raise InvalidArgument("error code must be an integer")

        return self._send(Operation.ADD_ERROR_CODE, ErrorCodeBody(error_code=error_code))

    def clear_error_codes(self) -> str:
        self._require_connected()
        return self._send(Operation.CLEAR_ERROR_CODES)

    def add_log(self, message: str, severity: int, data: Optional[str] = None) -> str:
        self._require_connected()

        if message is None or severity is None:
            raise InvalidArgument("message and severity are required for adding a log")
        if not isinstance(message, str):
            raise InvalidArgument("message must be a string")
        if isinstance(severity, bool) or severity not in LOG_SEVERITIES:
            raise InvalidArgument("severity can only equal 0, 1, or 2")
        if data is not None and not isinstance(data, str):
            raise InvalidArgument("data must be a string")

        return self._send(Operation.ADD_LOG, LogBody(message=message, severity=severity, data=data))

    def clear_logs(self) -> str:
        self._require_connected()
        return self._send(Operation.CLEAR_LOGS)

    # -------------------------
    # Controller-initiated actions
    # -------------------------
    def respond_device_action(self, correlation_id: str, accept: bool) -> None:
        """Acknowledge a pending action request: accept -> rc 202, reject -> rc 500."""
        self._require_connected()

        if not isinstance(correlation_id, str) or not correlation_id:
            raise InvalidArgument("correlation_id must be a non-empty string")
        if not isinstance(accept, bool):
            raise InvalidArgument("accept must be a boolean")

        with self._lock:
            request = self._inbound.take_for_ack(correlation_id)

        payload = encode_ack(correlation_id, accept)
        logger.info(
            "Publishing device action response for %s with payload: %s",
            request.topic,
            payload.decode("utf-8"),
        )
        try:
            self.transport.publish(ACK_TOPIC, payload, qos=QOS)
        except Exception:
            with self._lock:
                self._inbound.restore(request)
            raise

    def expire_pending(
        self, max_age_s: float, now: Optional[float] = None
    ) -> tuple[list[OutboundRequest], list[InboundActionRequest]]:
        """Drop requests and action requests pending longer than max_age_s. Nothing is re-sent."""
        with self._lock:
            return self._outbound.expire(max_age_s, now), self._inbound.expire(max_age_s, now)

    # -------------------------
    # Inbound dispatch
    # -------------------------
    def handle_message(self, topic: str, payload: bytes) -> None:
        """
        Transport callback for iotdm-1/#. Protocol errors are delivered to
        on_dm_error instead of being raised into the transport.
        """
        routed = classify(topic)
        if routed is None:
            return

        try:
            if routed.kind is TopicKind.RESPONSE:
                response = self._on_dm_response(payload)
                action = None
            else:
                response = None
                action = self._on_dm_request(topic, payload)
        except ManagedDeviceError as exc:
            self._notify_error(DmError(topic=topic, error=exc))
            return

        if response is not None and self.on_dm_response is not None:
            self.on_dm_response(response)
        if action is not None and self.on_dm_action is not None:
            self.on_dm_action(action)

    def _on_dm_response(self, payload: bytes) -> DmResponse:
        """Resolve the outbound request answered by payload. Raises UnknownCorrelationId / MalformedEnvelope."""
        envelope = decode_response(payload)
        with self._lock:
            request = self._outbound.resolve(envelope.correlation_id, envelope.result_code)

        op = Operation.for_topic(request.topic)
        label = op.label if op else request.topic
        if envelope.ok:
            logger.info("[%s] %s action completed: %s", envelope.result_code, label, request.payload.decode("utf-8"))
        else:
            logger.error("[%s] %s action failed: %s", envelope.result_code, label, request.payload.decode("utf-8"))

        return DmResponse(correlation_id=envelope.correlation_id, result_code=envelope.result_code)

    def _on_dm_request(self, topic: str, payload: bytes) -> Optional[DmAction]:
        """Hold an inbound request for acknowledgment; return a DmAction for action topics only."""
        envelope = decode_action_request(payload)
        with self._lock:
            self._inbound.register(envelope.correlation_id, topic, envelope.payload)

        routed = classify(topic)
        if routed is None or routed.kind is not TopicKind.ACTION:
            logger.debug("No action for device-management topic %s", topic)
            return None

        logger.info("Action requested: %s (reqId=%s)", routed.action_name, envelope.correlation_id)
        return DmAction(correlation_id=envelope.correlation_id, action=routed.action_name, body=envelope.body)

    def _notify_error(self, event: DmError) -> None:
        if self.on_dm_error is None:
            logger.error("Device-management protocol error on %s: %s", event.topic, event.error)
            return
        self.on_dm_error(event)
