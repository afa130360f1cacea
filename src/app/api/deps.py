"""FastAPI dependencies for the sync services built in the app lifespan.

Handlers take these via ``Depends`` so tests can substitute fakes through
``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.app.deals.reconciler import OrderReconciler
from src.app.events.store import InMemoryEventStore


def get_reconciler(request: Request) -> OrderReconciler:
    """OrderReconciler from app.state, 503 if not available."""
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Order sync not initialized",
        )
    return reconciler


def get_event_store(request: Request) -> InMemoryEventStore | None:
    """Diagnostic event store, or None when it was not created."""
    return getattr(request.app.state, "event_store", None)
