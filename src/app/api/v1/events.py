"""Read access to the diagnostic webhook event store.

Useful while wiring up a shop: shows what Shopify actually delivered.
Nothing here affects deals.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from src.app.api.deps import get_event_store
from src.app.events.schemas import EventRecord
from src.app.events.store import InMemoryEventStore

router = APIRouter(prefix="/api/events", tags=["events"])


class EventListResponse(BaseModel):
    count: int
    total_stored: int
    events: list[EventRecord]


class ClearResponse(BaseModel):
    removed: int


def _require_store(event_store: InMemoryEventStore | None) -> InMemoryEventStore:
    if event_store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event store not initialized",
        )
    return event_store


@router.get("", response_model=EventListResponse)
async def list_events(
    limit: int | None = Query(default=None, ge=1, le=1000),
    event_store: InMemoryEventStore | None = Depends(get_event_store),
) -> EventListResponse:
    """Stored events, one per order (latest delivery), newest first."""
    store = _require_store(event_store)
    events = store.all_events(limit=limit)
    return EventListResponse(count=len(events), total_stored=store.count(), events=events)


@router.get("/latest", response_model=EventRecord)
async def latest_event(
    event_store: InMemoryEventStore | None = Depends(get_event_store),
) -> EventRecord:
    record = _require_store(event_store).latest()
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No events stored")
    return record


@router.delete("", response_model=ClearResponse)
async def clear_events(
    event_store: InMemoryEventStore | None = Depends(get_event_store),
) -> ClearResponse:
    return ClearResponse(removed=_require_store(event_store).clear())
