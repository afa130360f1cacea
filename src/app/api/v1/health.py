"""Liveness check.

No external dependencies are checked: Bitrix is only contacted while handling
a webhook, and its outages surface there as 500 responses that Shopify
retries.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from src.app.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Basic liveness check."""
    settings = get_settings()
    event_store = getattr(request.app.state, "event_store", None)
    return {
        "status": "ok",
        "environment": settings.ENVIRONMENT.value,
        "bitrix_configured": bool(settings.BITRIX_WEBHOOK_BASE),
        "events_stored": event_store.count() if event_store is not None else 0,
    }
