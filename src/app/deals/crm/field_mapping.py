"""Bitrix24 deal field codes and enumeration ids used by the Shopify sync.

Defines:
- Field code constants for the standard and user-defined (UF_*) deal fields
  written by the sync.
- STAGE_CODES: per-pipeline mapping of Shopify financial status to Bitrix
  stage code (the ``WON`` in ``C2:WON``).
- PAYMENT_STATUS_ENUM: Shopify financial status to the list-field enum id of
  the payment status custom field.
- ORDER_TYPE_ENUM / DELIVERY_METHOD_ENUM: enum ids for the order type and
  delivery method custom fields.
- stage_id(): builds a category-scoped Bitrix STAGE_ID.
"""

from __future__ import annotations

from enum import Enum


class PipelineCategory(str, Enum):
    """Deal pipeline an order belongs to."""

    STOCK = "stock"
    PREORDER = "preorder"


# ── Deal Field Codes ───────────────────────────────────────────────────────

ORDER_ID_FIELD = "UF_SHOPIFY_ORDER_ID"
CUSTOMER_EMAIL_FIELD = "UF_SHOPIFY_CUSTOMER_EMAIL"
CUSTOMER_NAME_FIELD = "UF_SHOPIFY_CUSTOMER_NAME"
TOTAL_TAX_FIELD = "UF_SHOPIFY_TOTAL_TAX"
TOTAL_DISCOUNT_FIELD = "UF_SHOPIFY_TOTAL_DISCOUNT"
SHIPPING_PRICE_FIELD = "UF_SHOPIFY_SHIPPING_PRICE"

# Portal-generated list fields
PAYMENT_STATUS_FIELD = "UF_CRM_1739183959976"
ORDER_TYPE_FIELD = "UF_CRM_1739183268662"
DELIVERY_METHOD_FIELD = "UF_CRM_1739183302609"

# Columns requested when looking up deals by order id
DEAL_LOOKUP_SELECT: list[str] = [
    "ID",
    "OPPORTUNITY",
    "STAGE_ID",
    "CATEGORY_ID",
    "DATE_CREATE",
    ORDER_ID_FIELD,
]


# ── Stage Mapping ──────────────────────────────────────────────────────────
# Pre-order deals stay in EXECUTING once paid (goods not yet in stock);
# stock deals close as WON.

STAGE_CODES: dict[PipelineCategory, dict[str, str]] = {
    PipelineCategory.STOCK: {
        "pending": "NEW",
        "authorized": "PREPARATION",
        "partially_paid": "PREPAYMENT_INVOICE",
        "paid": "WON",
        "partially_refunded": "WON",
        "refunded": "LOSE",
        "voided": "LOSE",
        "cancelled": "LOSE",
    },
    PipelineCategory.PREORDER: {
        "pending": "NEW",
        "authorized": "PREPARATION",
        "partially_paid": "PREPAYMENT_INVOICE",
        "paid": "EXECUTING",
        "partially_refunded": "EXECUTING",
        "refunded": "LOSE",
        "voided": "LOSE",
        "cancelled": "LOSE",
    },
}


def stage_id(category_id: int, code: str) -> str:
    """Build a Bitrix STAGE_ID; the default pipeline (0) has no prefix."""
    if category_id == 0:
        return code
    return f"C{category_id}:{code}"


# ── List Field Enumerations ────────────────────────────────────────────────

PAYMENT_STATUS_ENUM: dict[str, str] = {
    "pending": "44",
    "authorized": "46",
    "partially_paid": "48",
    "paid": "50",
    "partially_refunded": "52",
    "refunded": "54",
    "voided": "56",
    "cancelled": "58",
}

PAYMENT_STATUS_DEFAULT = PAYMENT_STATUS_ENUM["pending"]

ORDER_TYPE_ENUM: dict[PipelineCategory, str] = {
    PipelineCategory.STOCK: "60",
    PipelineCategory.PREORDER: "62",
}

DELIVERY_METHOD_ENUM: dict[str, str] = {
    "pickup": "64",
    "courier": "66",
}
