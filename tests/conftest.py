"""Shared fixtures for the order sync tests.

Provides:
- InMemoryCRMGateway: CRMGateway test double holding deals, product rows
  and contacts in dicts, with switches to simulate an untrusted filter and
  collaborator failures.
- make_order_payload(): realistic Shopify ``orders/*`` webhook body.
- settings / crm_gateway / reconciler / order_factory / payload_factory
  fixtures.
"""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.app.config import Settings
from src.app.deals.crm.adapter import CRMGateway
from src.app.deals.crm.bitrix import BitrixAPIError
from src.app.deals.crm.field_mapping import ORDER_ID_FIELD
from src.app.deals.reconciler import OrderReconciler
from src.app.deals.schemas import ProductRow, ShopifyOrder

ORDER_ID = 5512345678901


# ── Payload Factory ──────────────────────────────────────────────────────────


def make_order_payload(**overrides: Any) -> dict[str, Any]:
    """Shopify order webhook body with sensible defaults."""
    payload: dict[str, Any] = {
        "id": ORDER_ID,
        "name": "#1001",
        "order_number": 1001,
        "email": "anna@example.com",
        "phone": None,
        "currency": "RUB",
        "financial_status": "paid",
        "total_price": "1500.00",
        "current_total_price": "1500.00",
        "total_tax": "250.00",
        "total_discounts": "0.00",
        "discount_codes": [],
        "tags": "",
        "note": None,
        "source_name": "web",
        "line_items": [
            {"id": 101, "title": "Tea set", "quantity": 2, "price": "500.00", "sku": "TEA-1"},
            {"id": 102, "title": "Cup", "quantity": 1, "price": "500.00", "sku": "CUP-1"},
        ],
        "shipping_lines": [{"title": "Courier", "code": "courier", "source": "shopify"}],
        "total_shipping_price_set": {
            "shop_money": {"amount": "300.00", "currency_code": "RUB"},
            "presentment_money": {"amount": "300.00", "currency_code": "RUB"},
        },
        "customer": {
            "id": 7001,
            "first_name": "Anna",
            "last_name": "Petrova",
            "email": "anna@example.com",
            "phone": "+79990001122",
        },
        "billing_address": {"first_name": "Anna", "last_name": "Petrova", "phone": None},
        "created_at": "2025-02-10T12:00:00+03:00",
        "updated_at": "2025-02-10T12:05:00+03:00",
    }
    payload.update(overrides)
    return payload


def make_order(**overrides: Any) -> ShopifyOrder:
    return ShopifyOrder.model_validate(make_order_payload(**overrides))


# ── In-Memory Test Double ────────────────────────────────────────────────────


_BASE_TIME = datetime(2025, 2, 1, 9, 0, tzinfo=timezone.utc)


class InMemoryCRMGateway(CRMGateway):
    """In-memory CRMGateway for testing without Bitrix.

    Attributes:
        filter_mode: "exact" applies the filter by string equality, "ignore"
            returns every deal (filter not honoured), "miss" returns nothing
            for filtered queries (index lag).
        fail_create / fail_update / fail_rows / fail_contact: simulate
            collaborator failures.
    """

    def __init__(self) -> None:
        self.deals: dict[str, dict[str, Any]] = {}
        self.product_rows: dict[str, list[ProductRow]] = {}
        self.contacts: dict[str, str] = {}
        self.calls: list[tuple[str, Any]] = []
        self.filter_mode = "exact"
        self.fail_create = False
        self.fail_update = False
        self.fail_rows = False
        self.fail_contact = False
        self._next_id = 100
        self._clock = _BASE_TIME

    def _tick(self) -> str:
        self._clock += timedelta(minutes=1)
        return self._clock.isoformat()

    def seed_deal(self, order_id: Any, **fields: Any) -> str:
        """Insert an existing deal directly, bypassing create_deal."""
        self._next_id += 1
        deal_id = str(self._next_id)
        deal = {
            "ID": deal_id,
            ORDER_ID_FIELD: order_id,
            "CATEGORY_ID": "2",
            "STAGE_ID": "C2:NEW",
            "DATE_CREATE": self._tick(),
            "OPPORTUNITY": "0",
        }
        deal.update(fields)
        self.deals[deal_id] = deal
        return deal_id

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    async def list_deals(
        self,
        filter: dict[str, Any] | None,
        select: list[str],
        order: dict[str, str],
        limit: int,
    ) -> list[dict[str, Any]]:
        self.calls.append(("list_deals", {"filter": filter, "limit": limit}))
        records = list(self.deals.values())
        if filter:
            if self.filter_mode == "miss":
                records = []
            elif self.filter_mode == "exact":
                records = [
                    r for r in records
                    if all(str(r.get(k)) == str(v) for k, v in filter.items())
                ]
        records.sort(key=lambda r: r["DATE_CREATE"], reverse=True)
        return [{k: r.get(k) for k in select} for r in records[:limit]]

    async def create_deal(self, fields: dict[str, Any]) -> str | None:
        self.calls.append(("create_deal", copy.deepcopy(fields)))
        if self.fail_create:
            return None
        self._next_id += 1
        deal_id = str(self._next_id)
        deal = {k: v for k, v in fields.items()}
        deal["ID"] = deal_id
        deal["DATE_CREATE"] = self._tick()
        deal["CATEGORY_ID"] = str(fields.get("CATEGORY_ID", 0))
        self.deals[deal_id] = deal
        return deal_id

    async def update_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        self.calls.append(("update_deal", (deal_id, copy.deepcopy(fields))))
        if self.fail_update:
            raise BitrixAPIError("crm.deal.update", "ACCESS_DENIED", "Access denied")
        self.deals[deal_id].update(fields)

    async def set_product_rows(self, deal_id: str, rows: list[ProductRow]) -> None:
        self.calls.append(("set_product_rows", (deal_id, list(rows))))
        if self.fail_rows:
            raise BitrixAPIError("crm.deal.productrows.set", "ERROR_CORE", "Row write failed")
        self.product_rows[deal_id] = list(rows)

    async def upsert_contact(self, order: ShopifyOrder) -> str | None:
        self.calls.append(("upsert_contact", order.order_key))
        if self.fail_contact:
            raise BitrixAPIError("crm.contact.add", "ERROR_CORE", "Contact failed")
        email = order.customer.email if order.customer else order.email
        if not email:
            return None
        return self.contacts.setdefault(email, str(900 + len(self.contacts)))


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        BITRIX_WEBHOOK_BASE="https://example.bitrix24.com/rest/1/token",
        BITRIX_CATEGORY_STOCK=2,
        BITRIX_CATEGORY_PREORDER=8,
        BITRIX_SKU_PRODUCT_MAP={"TEA-1": 501},
        PREORDER_TAGS=["pre-order", "preorder-product-added"],
        DEAL_LOOKUP_LIMIT=50,
        DEAL_FALLBACK_SCAN_LIMIT=100,
    )


@pytest.fixture
def crm_gateway() -> InMemoryCRMGateway:
    return InMemoryCRMGateway()


@pytest.fixture
def reconciler(crm_gateway: InMemoryCRMGateway, settings: Settings) -> OrderReconciler:
    return OrderReconciler(crm_gateway, settings)


@pytest.fixture
def order_factory():
    """Build a ShopifyOrder; keyword arguments override payload keys."""
    return make_order


@pytest.fixture
def payload_factory():
    """Build a raw Shopify order webhook body."""
    return make_order_payload
