"""API router -- aggregates the health, webhook and event routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import events, health, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(webhooks.router)
router.include_router(events.router)
