"""Webhook receivers for Shopify order events and Bitrix24 deal events.

Shopify (``/api/webhook/shopify``):
- POST only; other methods get an empty 405.
- The topic comes from the ``X-Shopify-Topic`` header.
- orders/create and orders/updated go to the OrderReconciler. orders/updated
  also carries refunds, cancellations and financial-status changes.
- products/update goes to the catalog hook, which never touches deals.
- refunds/create is accepted and logged only; refunds arrive through
  orders/updated.
- Any other topic is acknowledged with 200 so Shopify does not retry it.

Every accepted payload is copied into the diagnostic event store before
routing. A store failure is logged and never blocks processing.

Signatures (``X-Shopify-Hmac-Sha256``) are logged as present/absent but not
verified.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from src.app.api.deps import get_event_store, get_reconciler
from src.app.api.middleware.logging import get_request_id
from src.app.config import get_settings
from src.app.core.monitoring import shopify_webhooks_total
from src.app.deals.catalog import handle_product_updated
from src.app.deals.reconciler import OrderReconciler
from src.app.deals.schemas import ShopifyOrder, ShopifyProduct
from src.app.events.store import InMemoryEventStore

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])

# ── Topics ───────────────────────────────────────────────────────────────────

TOPIC_ORDER_CREATED = "orders/create"
TOPIC_ORDER_UPDATED = "orders/updated"
TOPIC_PRODUCT_UPDATED = "products/update"
TOPIC_REFUND_CREATED = "refunds/create"

KNOWN_TOPICS = frozenset(
    {TOPIC_ORDER_CREATED, TOPIC_ORDER_UPDATED, TOPIC_PRODUCT_UPDATED, TOPIC_REFUND_CREATED}
)

BITRIX_DEAL_UPDATED = "ONCRMDEALUPDATE"
BITRIX_DEAL_ADDED = "ONCRMDEALADD"


class PayloadError(Exception):
    """The request body cannot be processed."""

    def __init__(self, status_code: int, error: str, message: str) -> None:
        self.status_code = status_code
        self.error = error
        self.message = message
        super().__init__(message)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _error_response(status_code: int, error: str, message: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": message, "request_id": request_id},
    )


async def _read_json_object(request: Request) -> dict[str, Any]:
    """Read the body as a JSON object, enforcing WEBHOOK_MAX_BODY_BYTES.

    Raises:
        PayloadError: 413 when too large, 400 when not a JSON object.
    """
    max_bytes = get_settings().WEBHOOK_MAX_BODY_BYTES

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadError(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "payload_too_large",
            f"Body exceeds {max_bytes} bytes",
        )

    body = await request.body()
    if len(body) > max_bytes:
        raise PayloadError(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "payload_too_large",
            f"Body exceeds {max_bytes} bytes",
        )

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise PayloadError(status.HTTP_400_BAD_REQUEST, "invalid_json", str(exc)) from exc

    if not isinstance(payload, dict):
        raise PayloadError(
            status.HTTP_400_BAD_REQUEST, "invalid_payload", "Body must be a JSON object"
        )
    return payload


def _store_event(
    event_store: InMemoryEventStore | None,
    payload: dict[str, Any],
    topic: str | None,
    request_id: str,
) -> None:
    if event_store is None:
        return
    try:
        event_store.store(payload, topic=topic, request_id=request_id)
    except Exception:
        logger.warning("webhook.event_store_failed", topic=topic, exc_info=True)


def _topic_label(topic: str | None) -> str:
    return topic if topic in KNOWN_TOPICS else "other"


# ── Shopify ──────────────────────────────────────────────────────────────────


async def dispatch_shopify_event(
    request: Request,
    topic: str | None,
    reconciler: OrderReconciler,
    event_store: InMemoryEventStore | None,
) -> Response:
    """Validate, log and route one Shopify webhook delivery."""
    request_id = get_request_id(request)
    label = _topic_label(topic)

    try:
        payload = await _read_json_object(request)
    except PayloadError as exc:
        shopify_webhooks_total.labels(topic=label, outcome="rejected").inc()
        logger.warning("webhook.payload_rejected", topic=topic, error=exc.error, reason=exc.message)
        return _error_response(exc.status_code, exc.error, exc.message, request_id)

    log = logger.bind(topic=topic, order_id=payload.get("id"), order_name=payload.get("name"))
    log.info(
        "webhook.received",
        shop_domain=request.headers.get("x-shopify-shop-domain"),
        hmac_present="x-shopify-hmac-sha256" in request.headers,
    )
    if not topic:
        log.error("webhook.missing_topic", body_keys=sorted(payload))

    _store_event(event_store, payload, topic, request_id)

    order: ShopifyOrder | None = None
    product: ShopifyProduct | None = None
    try:
        if topic in (TOPIC_ORDER_CREATED, TOPIC_ORDER_UPDATED):
            order = ShopifyOrder.model_validate(payload)
        elif topic == TOPIC_PRODUCT_UPDATED:
            product = ShopifyProduct.model_validate(payload)
    except ValidationError as exc:
        shopify_webhooks_total.labels(topic=label, outcome="rejected").inc()
        log.warning("webhook.validation_failed", errors=exc.error_count())
        return _error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_payload", str(exc), request_id
        )

    try:
        if order is not None:
            if topic == TOPIC_ORDER_CREATED:
                result = await reconciler.handle_order_created(order)
            else:
                result = await reconciler.handle_order_updated(order)
            log.info("webhook.order_synced", deal_id=result.deal_id, action=result.action.value)
        elif product is not None:
            await handle_product_updated(product)
        elif topic == TOPIC_REFUND_CREATED:
            log.info("webhook.refund_ignored", reason="refunds are synced from orders/updated")
        else:
            log.info("webhook.unhandled_topic")
    except Exception as exc:
        shopify_webhooks_total.labels(topic=label, outcome="failed").inc()
        log.error("webhook.processing_failed", error=str(exc), exc_info=True)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", str(exc), request_id
        )

    shopify_webhooks_total.labels(topic=label, outcome="processed").inc()
    return JSONResponse(content={"success": True, "request_id": request_id, "topic": topic})


@router.post("/shopify")
async def receive_shopify_webhook(
    request: Request,
    reconciler: OrderReconciler = Depends(get_reconciler),
    event_store: InMemoryEventStore | None = Depends(get_event_store),
) -> Response:
    """Shopify webhook receiver, routed by ``X-Shopify-Topic``."""
    topic = request.headers.get("x-shopify-topic")
    return await dispatch_shopify_event(request, topic, reconciler, event_store)


@router.api_route(
    "/shopify",
    methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "OPTIONS"],
    include_in_schema=False,
)
async def reject_shopify_method(request: Request) -> Response:
    logger.warning("webhook.method_not_allowed", method=request.method)
    return Response(status_code=status.HTTP_405_METHOD_NOT_ALLOWED)


@router.post("/refund/crt")
async def receive_refund_webhook(
    request: Request,
    reconciler: OrderReconciler = Depends(get_reconciler),
    event_store: InMemoryEventStore | None = Depends(get_event_store),
) -> Response:
    """Static refund endpoint; always handled as ``refunds/create``."""
    return await dispatch_shopify_event(request, TOPIC_REFUND_CREATED, reconciler, event_store)


# ── Bitrix24 ─────────────────────────────────────────────────────────────────


def _extract_deal(event: dict[str, Any]) -> dict[str, Any]:
    """Deal fields from ``data.FIELDS``, ``FIELDS`` or the event itself."""
    data = event.get("data")
    if isinstance(data, dict) and isinstance(data.get("FIELDS"), dict):
        return data["FIELDS"]
    if isinstance(event.get("FIELDS"), dict):
        return event["FIELDS"]
    return event


@router.post("/bitrix")
async def receive_bitrix_webhook(request: Request) -> Response:
    """Bitrix24 deal event receiver.

    Deals are written from Shopify only, so deal events are logged and
    acknowledged without writing anything back.
    """
    request_id = get_request_id(request)
    try:
        event = await _read_json_object(request)
    except PayloadError as exc:
        return _error_response(exc.status_code, exc.error, exc.message, request_id)

    event_type = str(event.get("event") or event.get("EVENT") or "unknown")
    deal = _extract_deal(event)
    deal_id = deal.get("ID") or deal.get("id")
    if not deal_id:
        logger.error("bitrix_webhook.missing_deal_id", event_type=event_type)
        return _error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_event", "Invalid event format", request_id
        )

    log = logger.bind(event_type=event_type, deal_id=deal_id)
    if event_type == BITRIX_DEAL_UPDATED or "UPDATE" in event_type:
        log.info("bitrix_webhook.deal_updated", writeback="disabled")
    elif event_type == BITRIX_DEAL_ADDED or "ADD" in event_type:
        log.info("bitrix_webhook.deal_added")
    else:
        log.info("bitrix_webhook.unhandled_event")

    return JSONResponse(
        content={"success": True, "message": "Event processed", "request_id": request_id}
    )
