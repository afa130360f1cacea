"""Bounded in-memory store of received webhook payloads.

Process-lifetime only: contents are lost on restart and nothing here feeds
back into reconciliation. The store keeps the most recent
``EVENT_STORE_MAX_EVENTS`` records; older ones fall off the end.

Reads de-duplicate by order id (newest delivery wins) for display. The
underlying log keeps every delivery.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import deque
from typing import Any

import structlog

from src.app.events.schemas import EventRecord

logger = structlog.get_logger(__name__)


class EventSink(ABC):
    """Append-only destination for diagnostic copies of webhook payloads."""

    @abstractmethod
    def store(
        self,
        payload: dict[str, Any],
        topic: str | None = None,
        request_id: str | None = None,
    ) -> EventRecord:
        """Record a received payload and return the stored record."""
        ...


class InMemoryEventStore(EventSink):
    """Ring buffer of EventRecords.

    Args:
        max_events: Capacity; the oldest record is dropped when full.
    """

    def __init__(self, max_events: int = 500) -> None:
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self._events: deque[EventRecord] = deque(maxlen=max_events)

    def store(
        self,
        payload: dict[str, Any],
        topic: str | None = None,
        request_id: str | None = None,
    ) -> EventRecord:
        order_id = payload.get("id")
        record = EventRecord(
            topic=topic,
            order_id=str(order_id) if order_id is not None else None,
            request_id=request_id,
            payload=dict(payload),
        )
        self._events.append(record)
        logger.debug(
            "event_store.stored",
            event_id=record.event_id,
            topic=topic,
            order_id=record.order_id,
            size=len(self._events),
        )
        return record

    def all_events(self, limit: int | None = None) -> list[EventRecord]:
        """Newest first, keeping only the latest record per order id.

        Records without an order id are keyed by their own event id and
        always kept.
        """
        seen: set[str] = set()
        unique: list[EventRecord] = []
        for record in reversed(self._events):
            key = record.order_id or record.event_id
            if key in seen:
                continue
            seen.add(key)
            unique.append(record)
            if limit is not None and len(unique) >= limit:
                break
        return unique

    def latest(self) -> EventRecord | None:
        return self._events[-1] if self._events else None

    def count(self) -> int:
        return len(self._events)

    def clear(self) -> int:
        """Drop every record, return how many were removed."""
        removed = len(self._events)
        self._events.clear()
        logger.info("event_store.cleared", removed=removed)
        return removed
