"""Pipeline category and stage policy for Shopify orders.

Pure functions, no I/O:
- resolve_category(): order tags -> stock or pre-order pipeline.
- category_id_for(): pipeline -> configured Bitrix CATEGORY_ID.
- financial_status_to_stage(): financial status -> category-scoped STAGE_ID.
- financial_status_to_payment_status(): financial status -> payment enum id.

Unknown financial statuses never move a deal: the stage policy hands back the
current stage unchanged.
"""

from __future__ import annotations

from collections.abc import Iterable

from src.app.config import Settings
from src.app.deals.crm.field_mapping import (
    PAYMENT_STATUS_DEFAULT,
    PAYMENT_STATUS_ENUM,
    STAGE_CODES,
    PipelineCategory,
    stage_id,
)

# Status that keeps the deal where it is on update.
PARTIAL_REFUND_STATUS = "partially_refunded"


def normalize_status(financial_status: str | None) -> str:
    """Lower-case and trim a Shopify financial status ("" when missing)."""
    return (financial_status or "").strip().lower()


def resolve_category(tags: Iterable[str], preorder_tags: Iterable[str]) -> PipelineCategory:
    """Return PREORDER when any tag equals a pre-order tag, ignoring case."""
    wanted = {t.strip().lower() for t in preorder_tags}
    for tag in tags:
        if tag.strip().lower() in wanted:
            return PipelineCategory.PREORDER
    return PipelineCategory.STOCK


def category_id_for(category: PipelineCategory, settings: Settings) -> int:
    """Map a pipeline to its Bitrix CATEGORY_ID."""
    if category == PipelineCategory.PREORDER:
        return settings.BITRIX_CATEGORY_PREORDER
    return settings.BITRIX_CATEGORY_STOCK


def financial_status_to_stage(
    financial_status: str | None,
    category: PipelineCategory,
    category_id: int,
    current_stage: str | None,
) -> str | None:
    """Target STAGE_ID for a financial status within a pipeline.

    Args:
        financial_status: Shopify ``financial_status`` (any casing).
        category: Pipeline whose stage table applies.
        category_id: Bitrix CATEGORY_ID used to prefix the stage code.
        current_stage: The deal's current STAGE_ID, None for new deals.

    Returns:
        The mapped STAGE_ID, or ``current_stage`` for unknown statuses.
    """
    code = STAGE_CODES[category].get(normalize_status(financial_status))
    if code is None:
        return current_stage
    return stage_id(category_id, code)


def financial_status_to_payment_status(financial_status: str | None) -> str:
    """Payment status enum id; unknown or missing statuses read as pending."""
    return PAYMENT_STATUS_ENUM.get(normalize_status(financial_status), PAYMENT_STATUS_DEFAULT)
