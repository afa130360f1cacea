"""Diagnostic event record for received webhooks.

An EventRecord is a copy of an inbound webhook payload plus the metadata
needed to inspect it later. Records are never consulted when reconciling
orders with the CRM.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class EventRecord(BaseModel):
    """A received webhook as kept by the diagnostic store.

    Attributes:
        event_id: Unique identifier (auto-generated UUID4).
        received_at: UTC receipt time.
        topic: Webhook topic header, None when the sender omitted it.
        order_id: Stringified ``id`` of the payload, None when absent.
        request_id: Correlation id of the HTTP request that delivered it.
        payload: The payload as received.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    topic: str | None = None
    order_id: str | None = None
    request_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
