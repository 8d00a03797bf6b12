"""
Correlation tables for device-management exchanges.

Outbound: device-initiated requests awaiting a controller response.
Inbound: controller-initiated action requests awaiting the device's ack.

Entries never expire on their own; callers that need a timeout policy use
expire(). Both tables are owned by a single ManagedDeviceClient, which
serializes access to them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from managed_device.core.errors import DuplicateCorrelationId, UnknownCorrelationId

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OutboundRequest:
    correlation_id: str
    topic: str
    payload: bytes
    created_ts: float = field(default_factory=time.monotonic)


@dataclass(frozen=True, slots=True)
class InboundActionRequest:
    correlation_id: str
    topic: str
    payload: dict[str, Any]
    created_ts: float = field(default_factory=time.monotonic)


E = TypeVar("E", OutboundRequest, InboundActionRequest)


class _CorrelationTable(Generic[E]):
    def __init__(self) -> None:
        self._entries: dict[str, E] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._entries

    def get(self, correlation_id: str) -> Optional[E]:
        return self._entries.get(correlation_id)

    def pending(self) -> list[E]:
        return list(self._entries.values())

    def _pop(self, correlation_id: str) -> E:
        try:
            return self._entries.pop(correlation_id)
        except KeyError:
            raise UnknownCorrelationId(correlation_id) from None

    def expire(self, max_age_s: float, now: Optional[float] = None) -> list[E]:
        """Remove and return entries older than max_age_s seconds."""
        if max_age_s < 0:
            raise ValueError("max_age_s must be >= 0")
        now = time.monotonic() if now is None else now
        stale = [e for e in self._entries.values() if now - e.created_ts > max_age_s]
        for entry in stale:
            del self._entries[entry.correlation_id]
        if stale:
            logger.info("Expired %d pending entries older than %.1fs", len(stale), max_age_s)
        return stale


class OutboundCorrelationTable(_CorrelationTable[OutboundRequest]):
    def register(self, correlation_id: str, topic: str, payload: bytes) -> OutboundRequest:
        if correlation_id in self._entries:
            raise DuplicateCorrelationId(correlation_id)
        entry = OutboundRequest(correlation_id=correlation_id, topic=topic, payload=payload)
        self._entries[correlation_id] = entry
        return entry

    def resolve(self, correlation_id: str, result_code: int) -> OutboundRequest:
        """Remove and return the request answered by a response. Table is untouched on failure."""
        entry = self._pop(correlation_id)
        logger.debug("Resolved request %s rc=%s topic=%s", correlation_id, result_code, entry.topic)
        return entry

    def discard(self, correlation_id: str) -> Optional[OutboundRequest]:
        return self._entries.pop(correlation_id, None)


class InboundCorrelationTable(_CorrelationTable[InboundActionRequest]):
    def register(self, correlation_id: str, topic: str, payload: dict[str, Any]) -> InboundActionRequest:
        if correlation_id in self._entries:
            # controller may reuse an id once the earlier exchange is done
            logger.debug("Replacing pending action request %s", correlation_id)
        entry = InboundActionRequest(correlation_id=correlation_id, topic=topic, payload=payload)
        self._entries[correlation_id] = entry
        return entry

    def take_for_ack(self, correlation_id: str) -> InboundActionRequest:
        return self._pop(correlation_id)

    def restore(self, entry: InboundActionRequest) -> None:
        """Put back an entry taken for an ack that was never published. A newer request with the same id wins."""
        self._entries.setdefault(entry.correlation_id, entry)
