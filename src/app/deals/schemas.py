"""Pydantic schemas for the Shopify order -> Bitrix24 deal sync.

Defines all structured types crossing the sync boundary:
- Shopify payloads: ShopifyOrder (with LineItem, DiscountCode, ShippingLine,
  Customer, Address, MoneySet) and ShopifyProduct (with ProductVariant).
  Unknown keys are kept so the payload can be stored verbatim.
- CRM payloads: ProductRow, MappedDeal, DealRecord.
- Sync results: ReconcileOperation, ReconcileAction, ReconcileResult.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.app.deals.crm.field_mapping import ORDER_ID_FIELD

# Shopify sends money as decimal strings; older payloads and tests may use numbers.
Money = str | float | int | None


# ── Shopify Payloads ────────────────────────────────────────────────────────


class _ShopifyModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class ShopMoney(_ShopifyModel):
    amount: Money = None
    currency_code: str | None = None


class MoneySet(_ShopifyModel):
    """Shopify ``*_set`` money bag; only the shop currency is used."""

    shop_money: ShopMoney | None = None
    presentment_money: ShopMoney | None = None


class DiscountCode(_ShopifyModel):
    code: str | None = None
    amount: Money = None
    type: str | None = None


class LineItem(_ShopifyModel):
    id: int | str | None = None
    title: str | None = None
    name: str | None = None
    quantity: int | None = None
    price: Money = None
    price_set: MoneySet | None = None
    sku: str | None = None
    variant_id: int | str | None = None
    product_id: int | str | None = None


class ShippingLine(_ShopifyModel):
    title: str | None = None
    code: str | None = None
    source: str | None = None


class Customer(_ShopifyModel):
    id: int | str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None


class Address(_ShopifyModel):
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None


class ShopifyOrder(_ShopifyModel):
    """Shopify order as delivered by ``orders/*`` webhooks. Never mutated."""

    id: int | str
    name: str | None = None
    order_number: int | str | None = None
    email: str | None = None
    phone: str | None = None
    currency: str | None = None
    note: str | None = None
    source_name: str | None = None
    financial_status: str | None = None

    total_price: Money = None
    current_total_price: Money = None
    total_price_set: MoneySet | None = None
    total_tax: Money = None
    current_total_tax: Money = None
    total_tax_set: MoneySet | None = None
    total_discounts: Money = None
    shipping_price: Money = None
    total_shipping_price_set: MoneySet | None = None

    discount_codes: list[DiscountCode] | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    shipping_lines: list[ShippingLine] = Field(default_factory=list)
    tags: str | list[str] | None = None

    customer: Customer | None = None
    billing_address: Address | None = None

    created_at: str | None = None
    updated_at: str | None = None

    @property
    def order_key(self) -> str:
        """The order id as stored in the deal join-key field."""
        return str(self.id)

    @property
    def tag_list(self) -> list[str]:
        """Tags as a list; Shopify sends them comma-separated."""
        if self.tags is None:
            return []
        if isinstance(self.tags, list):
            return [t.strip() for t in self.tags if t and t.strip()]
        return [t.strip() for t in self.tags.split(",") if t.strip()]


class ProductVariant(_ShopifyModel):
    id: int | str | None = None
    sku: str | None = None
    title: str | None = None
    price: Money = None
    inventory_quantity: int | None = None


class ShopifyProduct(_ShopifyModel):
    """Shopify product as delivered by ``products/update`` webhooks."""

    id: int | str | None = None
    title: str | None = None
    handle: str | None = None
    vendor: str | None = None
    variants: list[ProductVariant] = Field(default_factory=list)


# ── CRM Payloads ────────────────────────────────────────────────────────────


class ProductRow(BaseModel):
    """One row of ``crm.deal.productrows.set``."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(default=0, alias="PRODUCT_ID")
    product_name: str = Field(alias="PRODUCT_NAME")
    price: float | None = Field(default=None, alias="PRICE")
    quantity: int = Field(default=1, alias="QUANTITY")

    def to_bitrix(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class MappedDeal(BaseModel):
    """Mapper output: deal fields keyed by Bitrix field code plus product rows."""

    fields: dict[str, Any]
    product_rows: list[ProductRow] = Field(default_factory=list)


class DealRecord(BaseModel):
    """A deal as returned by ``crm.deal.list`` with the lookup select."""

    model_config = ConfigDict(
        populate_by_name=True, extra="allow", coerce_numbers_to_str=True
    )

    id: str = Field(alias="ID")
    order_id: Any = Field(default=None, alias=ORDER_ID_FIELD)
    category_id: int | str | None = Field(default=None, alias="CATEGORY_ID")
    stage_id: str | None = Field(default=None, alias="STAGE_ID")
    date_create: str | None = Field(default=None, alias="DATE_CREATE")
    opportunity: Money = Field(default=None, alias="OPPORTUNITY")


# ── Sync Results ────────────────────────────────────────────────────────────


class ReconcileOperation(str, Enum):
    """Which webhook triggered the reconciliation."""

    CREATED = "created"
    UPDATED = "updated"


class ReconcileAction(str, Enum):
    """What the reconciler did to the CRM."""

    CREATED = "created"
    UPDATED = "updated"


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation."""

    deal_id: str
    action: ReconcileAction
    matched_count: int = 0
    orphaned_deal_ids: list[str] = Field(default_factory=list)
    product_rows_synced: bool = False
