"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry, and a
lifespan that builds the Bitrix gateway, the order reconciler and the
diagnostic event store on ``app.state``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as api_router
from src.app.deals.crm.bitrix import BitrixGateway
from src.app.deals.reconciler import OrderReconciler
from src.app.events.store import InMemoryEventStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: logging, Sentry and sync services on startup."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    if not settings.BITRIX_WEBHOOK_BASE:
        log.warning("startup.bitrix_not_configured")

    gateway = BitrixGateway(settings.BITRIX_WEBHOOK_BASE, timeout=settings.BITRIX_TIMEOUT)
    app.state.crm_gateway = gateway
    app.state.reconciler = OrderReconciler(gateway, settings)
    app.state.event_store = InMemoryEventStore(max_events=settings.EVENT_STORE_MAX_EVENTS)

    log.info(
        "startup.complete",
        environment=settings.ENVIRONMENT.value,
        stock_category_id=settings.BITRIX_CATEGORY_STOCK,
        preorder_category_id=settings.BITRIX_CATEGORY_PREORDER,
        preorder_tags=settings.PREORDER_TAGS,
    )

    yield

    log.info("shutdown.complete", events_stored=app.state.event_store.count())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Shopify Bitrix24 Sync",
        version="0.1.0",
        description="Keeps one Bitrix24 deal per Shopify order",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (request id + timing for every request)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(api_router)

    # Prometheus metrics endpoint (infrastructure route, outside the API router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
