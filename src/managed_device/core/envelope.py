"""
Envelope codec for device-management payloads.

Requests:  { "d": <body>, "reqId": <uuid> }   ("d" omitted for body-less operations)
Responses: { "rc": <int>, "reqId": <id> }      (200 = success)
Acks:      { "rc": 202 | 500, "reqId": <id> }  (accepted | rejected)
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from managed_device.core.errors import MalformedEnvelope

RC_OK = 200
RC_ACCEPTED = 202
RC_REJECTED = 500


def utc_timestamp() -> str:
    """Current UTC time as ISO8601 with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class ManageBody:
    lifetime: Optional[int] = None
    supports_device_actions: Optional[bool] = None
    supports_firmware_actions: Optional[bool] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.lifetime is not None:
            d["lifetime"] = self.lifetime
        if self.supports_device_actions is not None or self.supports_firmware_actions is not None:
            supports: dict[str, bool] = {}
            if self.supports_device_actions is not None:
                supports["deviceActions"] = self.supports_device_actions
            if self.supports_firmware_actions is not None:
                supports["firmwareActions"] = self.supports_firmware_actions
            d["supports"] = supports
        return d


@dataclass(frozen=True, slots=True)
class LocationBody:
    longitude: float
    latitude: float
    elevation: Optional[float] = None
    accuracy: Optional[float] = None
    measured_date_time: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"longitude": self.longitude, "latitude": self.latitude}
        if self.elevation is not None:
            d["elevation"] = self.elevation
        if self.accuracy is not None:
            d["accuracy"] = self.accuracy
        d["measuredDateTime"] = self.measured_date_time
        return d


@dataclass(frozen=True, slots=True)
class ErrorCodeBody:
    error_code: int

    def to_dict(self) -> dict[str, Any]:
        return {"errorCode": self.error_code}


@dataclass(frozen=True, slots=True)
class LogBody:
    message: str
    severity: int
    data: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "message": self.message,
            "severity": self.severity,
            "timestamp": self.timestamp,
        }
        if self.data is not None:
            d["data"] = self.data
        return d


RequestBody = Union[ManageBody, LocationBody, ErrorCodeBody, LogBody]


@dataclass(frozen=True, slots=True)
class ResponseEnvelope:
    correlation_id: str
    result_code: int

    @property
    def ok(self) -> bool:
        return self.result_code == RC_OK


@dataclass(frozen=True, slots=True)
class ActionRequestEnvelope:
    correlation_id: str
    body: Any
    payload: dict[str, Any]


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def _dumps(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def _loads(raw: Union[bytes, str]) -> dict[str, Any]:
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        obj = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEnvelope(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise MalformedEnvelope("payload must be a JSON object")
    return obj


def _req_id(obj: dict[str, Any]) -> str:
    req_id = obj.get("reqId")
    if not isinstance(req_id, str) or not req_id:
        raise MalformedEnvelope("envelope has no reqId")
    return req_id


def encode_request(body: Optional[RequestBody] = None) -> tuple[str, bytes]:
    """Wrap an operation body with a fresh correlation id. Returns (correlation_id, wire bytes)."""
    correlation_id = new_correlation_id()
    envelope: dict[str, Any] = {}
    if body is not None:
        envelope["d"] = body.to_dict()
    envelope["reqId"] = correlation_id
    return correlation_id, _dumps(envelope)


def decode_response(raw: Union[bytes, str]) -> ResponseEnvelope:
    obj = _loads(raw)
    req_id = _req_id(obj)
    rc = obj.get("rc")
    if not isinstance(rc, int) or isinstance(rc, bool):
        raise MalformedEnvelope(f"response {req_id} has no integer rc")
    return ResponseEnvelope(correlation_id=req_id, result_code=rc)


def decode_action_request(raw: Union[bytes, str]) -> ActionRequestEnvelope:
    obj = _loads(raw)
    return ActionRequestEnvelope(correlation_id=_req_id(obj), body=obj.get("d"), payload=obj)


def encode_ack(correlation_id: str, accepted: bool) -> bytes:
    rc = RC_ACCEPTED if accepted else RC_REJECTED
    return _dumps({"rc": rc, "reqId": correlation_id})
