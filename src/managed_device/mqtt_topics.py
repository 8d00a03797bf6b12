"""
MQTT topic schema for the managed device client.

Device publishes management requests under iotdevice-1/ and receives
device-management traffic under iotdm-1/.
Device events: iot-2/evt/<event>/fmt/<format>.
Device commands: iot-2/cmd/<command>/fmt/<format>.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

DEVICE_NAMESPACE = "iotdevice-1"
DM_NAMESPACE = "iotdm-1"

# Publish
MANAGE_TOPIC = f"{DEVICE_NAMESPACE}/mgmt/manage"
UNMANAGE_TOPIC = f"{DEVICE_NAMESPACE}/mgmt/unmanage"
UPDATE_LOCATION_TOPIC = f"{DEVICE_NAMESPACE}/device/update/location"
ADD_LOG_TOPIC = f"{DEVICE_NAMESPACE}/add/diag/log"
CLEAR_LOGS_TOPIC = f"{DEVICE_NAMESPACE}/clear/diag/log"
ADD_ERROR_CODE_TOPIC = f"{DEVICE_NAMESPACE}/add/diag/errorCodes"
CLEAR_ERROR_CODES_TOPIC = f"{DEVICE_NAMESPACE}/clear/diag/errorCodes"
ACK_TOPIC = f"{DEVICE_NAMESPACE}/response"

# Subscribe
DM_WILDCARD_TOPIC = f"{DM_NAMESPACE}/#"
DM_RESPONSE_TOPIC = f"{DM_NAMESPACE}/response"
COMMAND_WILDCARD_TOPIC = "iot-2/cmd/+/fmt/+"

FIRMWARE_CATEGORY = "firmware"

_FORBIDDEN_CHARS = ("/", "+", "#")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def _validate_segment(name: str, value: str) -> str:
    if not isinstance(value, str) or not value:
        raise TopicSchemaError(f"{name} must be a non-empty string")
    if any(c in value for c in _FORBIDDEN_CHARS):
        raise TopicSchemaError(
            f"{name} '{value}' is invalid; '/', '+' and '#' are not allowed"
        )
    return value


class Operation(Enum):
    """Device-initiated management operations, keyed by their publish topic."""

    MANAGE = (MANAGE_TOPIC, "Manage")
    UNMANAGE = (UNMANAGE_TOPIC, "Unmanage")
    UPDATE_LOCATION = (UPDATE_LOCATION_TOPIC, "Update location")
    ADD_LOG = (ADD_LOG_TOPIC, "Add log")
    CLEAR_LOGS = (CLEAR_LOGS_TOPIC, "Clear logs")
    ADD_ERROR_CODE = (ADD_ERROR_CODE_TOPIC, "Add error code")
    CLEAR_ERROR_CODES = (CLEAR_ERROR_CODES_TOPIC, "Clear error codes")

    def __init__(self, topic: str, label: str) -> None:
        self.topic = topic
        self.label = label

    @classmethod
    def for_topic(cls, topic: str) -> Optional["Operation"]:
        for op in cls:
            if op.topic == topic:
                return op
        return None


class TopicKind(Enum):
    RESPONSE = "response"
    ACTION = "action"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True, slots=True)
class RoutedTopic:
    kind: TopicKind
    category: Optional[str] = None
    verb: Optional[str] = None

    @property
    def action_name(self) -> Optional[str]:
        """
        Name surfaced to the application for an action request.
        Firmware verbs are prefixed so they cannot collide with device verbs.
        """
        if self.kind is not TopicKind.ACTION:
            return None
        if self.category == FIRMWARE_CATEGORY:
            return f"{FIRMWARE_CATEGORY}_{self.verb}"
        return self.verb


def classify(topic: str) -> Optional[RoutedTopic]:
    """
    Classify an inbound topic under the device-management namespace.

    Returns None for topics outside iotdm-1/. Action requests must be exactly
    iotdm-1/mgmt/initiate/<category>/<verb>; anything else under the namespace
    (besides the response topic) is UNRECOGNIZED.
    """
    parts = topic.split("/")
    if parts[0] != DM_NAMESPACE:
        return None
    if topic == DM_RESPONSE_TOPIC:
        return RoutedTopic(TopicKind.RESPONSE)
    if len(parts) == 5 and parts[1] == "mgmt" and parts[2] == "initiate":
        category, verb = parts[3], parts[4]
        if category and verb:
            return RoutedTopic(TopicKind.ACTION, category=category, verb=verb)
    return RoutedTopic(TopicKind.UNRECOGNIZED)


def classify_command(topic: str) -> Optional[tuple[str, str]]:
    """Return (command, format) for iot-2/cmd/<command>/fmt/<format>, else None."""
    parts = topic.split("/")
    if len(parts) != 5 or parts[0] != "iot-2" or parts[1] != "cmd" or parts[3] != "fmt":
        return None
    if not parts[2] or not parts[4]:
        return None
    return parts[2], parts[4]


def event_topic(event: str, fmt: str) -> str:
    return f"iot-2/evt/{_validate_segment('event', event)}/fmt/{_validate_segment('format', fmt)}"


def action_topic(category: str, verb: str) -> str:
    """Action request topic as published by the controller."""
    return (
        f"{DM_NAMESPACE}/mgmt/initiate/"
        f"{_validate_segment('category', category)}/{_validate_segment('verb', verb)}"
    )
