"""
Errors raised by the device-management protocol engine.
"""

from __future__ import annotations


class ManagedDeviceError(Exception):
    """Base class for device-management protocol errors."""


class NotConnected(ManagedDeviceError):
    """Raised when an operation needs the transport but it is down."""


class InvalidArgument(ManagedDeviceError, ValueError):
    """Raised when operation arguments fail validation. Nothing is published."""


class UnknownCorrelationId(ManagedDeviceError, KeyError):
    """Raised when a response or acknowledgment references no pending entry."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__(correlation_id)
        self.correlation_id = correlation_id

    def __str__(self) -> str:
        return f"unknown request: {self.correlation_id}"


class DuplicateCorrelationId(ManagedDeviceError):
    """Raised when an outbound correlation id is registered twice."""

    def __init__(self, correlation_id: str) -> None:
        super().__init__(f"duplicate request id: {correlation_id}")
        self.correlation_id = correlation_id


class MalformedEnvelope(ManagedDeviceError, ValueError):
    """Raised when a wire payload cannot be decoded into an envelope."""
