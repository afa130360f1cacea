"""Shopify order -> Bitrix24 deal field mapper.

Pure transformation with no I/O. ``map_order_to_deal`` returns the deal
fields (keyed by Bitrix field code) and the product rows for an order.

Value rules:
- Money arrives as decimal strings. Missing or unparseable amounts map to
  None, never 0, so "unknown" stays distinguishable from "free".
- A discount total of zero maps to None: the discount field is blank for
  both "no discount" and "no discount data".
- Dates are reduced to YYYY-MM-DD; unparseable dates map to None.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from src.app.deals.crm.field_mapping import (
    CUSTOMER_EMAIL_FIELD,
    CUSTOMER_NAME_FIELD,
    DELIVERY_METHOD_ENUM,
    DELIVERY_METHOD_FIELD,
    ORDER_ID_FIELD,
    ORDER_TYPE_ENUM,
    ORDER_TYPE_FIELD,
    SHIPPING_PRICE_FIELD,
    TOTAL_DISCOUNT_FIELD,
    TOTAL_TAX_FIELD,
)
from src.app.deals.policy import resolve_category
from src.app.deals.schemas import (
    LineItem,
    MappedDeal,
    MoneySet,
    ProductRow,
    ShopifyOrder,
)

DEFAULT_PREORDER_TAGS: tuple[str, ...] = ("pre-order", "preorder-product-added")

_PICKUP_MARKERS = ("pickup", "pick up", "pick-up", "самовывоз")


def parse_money(value: Any) -> float | None:
    """Parse a Shopify money value; None for missing or unparseable input."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        if not value.strip():
            return None
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _shop_amount(money_set: MoneySet | None) -> Any:
    if money_set is None or money_set.shop_money is None:
        return None
    return money_set.shop_money.amount


def _first_money(*candidates: Any) -> float | None:
    """First candidate that parses as money."""
    for candidate in candidates:
        parsed = parse_money(candidate)
        if parsed is not None:
            return parsed
    return None


def format_date(value: str | None) -> str | None:
    """Reduce an ISO-8601 timestamp to its calendar date."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date().isoformat()
    except (ValueError, TypeError, AttributeError):
        return None


def _join_name(first: str | None, last: str | None) -> str | None:
    name = f"{first or ''} {last or ''}".strip()
    return name or None


def customer_name(order: ShopifyOrder) -> str | None:
    """Customer first + last name, falling back to the billing address."""
    if order.customer is not None:
        name = _join_name(order.customer.first_name, order.customer.last_name)
        if name:
            return name
    if order.billing_address is not None:
        return _join_name(order.billing_address.first_name, order.billing_address.last_name)
    return None


def customer_email(order: ShopifyOrder) -> str | None:
    if order.customer is not None and order.customer.email:
        return order.customer.email
    return order.email or None


def discount_total(order: ShopifyOrder) -> float | None:
    """Sum of discount-code amounts, else the order's aggregate discount."""
    if order.discount_codes:
        total = sum(parse_money(code.amount) or 0.0 for code in order.discount_codes)
    else:
        total = parse_money(order.total_discounts)
    if not total:
        return None
    return round(total, 2)


def deal_title(order: ShopifyOrder) -> str:
    if order.order_number not in (None, ""):
        return f"#{order.order_number}"
    return order.name or f"Order #{order.id}"


def delivery_method(order: ShopifyOrder) -> str | None:
    """Delivery method enum id from the first shipping line."""
    if not order.shipping_lines:
        return None
    line = order.shipping_lines[0]
    text = " ".join(p for p in (line.code, line.title, line.source) if p).lower()
    if any(marker in text for marker in _PICKUP_MARKERS):
        return DELIVERY_METHOD_ENUM["pickup"]
    return DELIVERY_METHOD_ENUM["courier"]


def _row_name(item: LineItem) -> str:
    return item.title or item.name or item.sku or f"Line item {item.id}"


def _row_quantity(item: LineItem) -> int:
    # current_quantity excludes items removed by edits and refunds
    current = (item.model_extra or {}).get("current_quantity")
    if isinstance(current, int):
        return current
    return item.quantity if item.quantity is not None else 1


def product_rows(
    order: ShopifyOrder,
    sku_product_ids: Mapping[str, int] | None = None,
) -> list[ProductRow]:
    """One product row per line item still on the order."""
    sku_product_ids = sku_product_ids or {}
    rows: list[ProductRow] = []
    for item in order.line_items:
        quantity = _row_quantity(item)
        if quantity <= 0:
            continue
        rows.append(
            ProductRow(
                product_id=sku_product_ids.get(item.sku or "", 0),
                product_name=_row_name(item),
                price=_first_money(item.price, _shop_amount(item.price_set)),
                quantity=quantity,
            )
        )
    return rows


def map_order_to_deal(
    order: ShopifyOrder,
    *,
    preorder_tags: Iterable[str] = DEFAULT_PREORDER_TAGS,
    sku_product_ids: Mapping[str, int] | None = None,
) -> MappedDeal:
    """Map a Shopify order to Bitrix deal fields and product rows.

    Args:
        order: Validated Shopify order payload.
        preorder_tags: Tags that mark an order as pre-order (order type field).
        sku_product_ids: Optional SKU -> Bitrix catalog PRODUCT_ID lookup.

    Returns:
        MappedDeal whose fields always carry the stringified order id.
    """
    category = resolve_category(order.tag_list, preorder_tags)

    fields: dict[str, Any] = {
        "TITLE": deal_title(order),
        "CURRENCY_ID": order.currency or None,
        "OPPORTUNITY": _first_money(
            order.current_total_price,
            order.total_price,
            _shop_amount(order.total_price_set),
        ),
        "COMMENTS": order.note or None,
        "SOURCE_DESCRIPTION": order.source_name or None,
        "BEGINDATE": format_date(order.created_at),
        "CLOSEDATE": format_date(order.updated_at or order.created_at),
        ORDER_ID_FIELD: order.order_key,
        CUSTOMER_EMAIL_FIELD: customer_email(order),
        CUSTOMER_NAME_FIELD: customer_name(order),
        TOTAL_TAX_FIELD: _first_money(
            order.current_total_tax,
            order.total_tax,
            _shop_amount(order.total_tax_set),
        ),
        TOTAL_DISCOUNT_FIELD: discount_total(order),
        SHIPPING_PRICE_FIELD: _first_money(
            _shop_amount(order.total_shipping_price_set),
            order.shipping_price,
        ),
        ORDER_TYPE_FIELD: ORDER_TYPE_ENUM[category],
        DELIVERY_METHOD_FIELD: delivery_method(order),
    }

    return MappedDeal(fields=fields, product_rows=product_rows(order, sku_product_ids))
