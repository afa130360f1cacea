"""Diagnostic intake log for webhook payloads.

Exports:
    EventRecord: Stored copy of one received webhook.
    EventSink: Interface the webhook dispatcher writes to.
    InMemoryEventStore: Bounded, process-lifetime EventSink.
"""

from __future__ import annotations

from src.app.events.schemas import EventRecord
from src.app.events.store import EventSink, InMemoryEventStore

__all__ = [
    "EventRecord",
    "EventSink",
    "InMemoryEventStore",
]
