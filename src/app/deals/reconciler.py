"""Order reconciler -- keeps exactly one Bitrix24 deal per Shopify order.

Both ``orders/create`` and ``orders/updated`` run the same idempotent
sequence: look the order up, then create a deal or update the one found.

Lookup is two-phase because the CRM offers no unique index on the join key
and its filter is not trusted:
1. Filtered query on the join key, re-checked client-side with
   canonical_order_key().
2. If nothing matched, one bounded scan of the most recent deals with the
   same client-side check.

More than one match is a data-integrity anomaly (two deliveries raced through
lookup before either created a deal). The most recently created deal is
updated and the others are left untouched and reported as orphans.

Failure rules: lookup, deal creation and field updates raise; contact upsert
and product-row writes are logged and swallowed.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.config import Settings
from src.app.core.monitoring import deal_lookup_anomalies_total, deal_reconciliations_total
from src.app.deals.crm.adapter import CRMGateway
from src.app.deals.crm.field_mapping import (
    DEAL_LOOKUP_SELECT,
    DELIVERY_METHOD_FIELD,
    ORDER_ID_FIELD,
    ORDER_TYPE_FIELD,
    PAYMENT_STATUS_FIELD,
    SHIPPING_PRICE_FIELD,
    TOTAL_DISCOUNT_FIELD,
    TOTAL_TAX_FIELD,
)
from src.app.deals.mapper import map_order_to_deal
from src.app.deals.policy import (
    PARTIAL_REFUND_STATUS,
    category_id_for,
    financial_status_to_payment_status,
    financial_status_to_stage,
    normalize_status,
    resolve_category,
)
from src.app.deals.schemas import (
    DealRecord,
    MappedDeal,
    ReconcileAction,
    ReconcileOperation,
    ReconcileResult,
    ShopifyOrder,
)

logger = structlog.get_logger(__name__)

_NEWEST_FIRST = {"DATE_CREATE": "DESC"}
_OLDEST = datetime.min.replace(tzinfo=timezone.utc)
_PLAIN_NUMBER = re.compile(r"([+-]?)(\d+)(?:\.(\d*))?", re.ASCII)


class DealCreateError(RuntimeError):
    """The CRM did not assign an ID to a newly created deal."""


def canonical_order_key(value: Any) -> str | None:
    """Canonical comparison form of a join-key value.

    The CRM may hand the join key back as a number, a padded string or a
    float-formatted string. Values are stringified and trimmed. Plain
    decimal numbers lose leading zeros and trailing fractional zeros, so
    ``"123.0"`` and ``123`` both read ``"123"``; anything else, exponent
    forms included, is compared as the trimmed text. Empty values return None.
    """
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text:
        return None
    match = _PLAIN_NUMBER.fullmatch(text)
    if match is None:
        return text
    sign, whole, fraction = match.groups()
    whole = whole.lstrip("0") or "0"
    fraction = (fraction or "").rstrip("0")
    if sign == "+" or (whole == "0" and not fraction):
        sign = ""
    return f"{sign}{whole}.{fraction}" if fraction else f"{sign}{whole}"


def _created_at(deal: DealRecord) -> datetime:
    if not deal.date_create:
        return _OLDEST
    try:
        parsed = datetime.fromisoformat(deal.date_create.replace("Z", "+00:00"))
    except ValueError:
        return _OLDEST
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _numeric_id(deal: DealRecord) -> int:
    try:
        return int(deal.id)
    except ValueError:
        return 0


def newest_first(deals: list[DealRecord]) -> list[DealRecord]:
    """Sort by DATE_CREATE descending, ties broken by the higher deal ID."""
    return sorted(deals, key=lambda d: (_created_at(d), _numeric_id(d)), reverse=True)


class OrderReconciler:
    """Create-or-update orchestration of a Shopify order onto a Bitrix deal.

    Args:
        gateway: CRM gateway used for all reads and writes.
        settings: Application settings (pipelines, pre-order tags, lookup bounds).
    """

    def __init__(self, gateway: CRMGateway, settings: Settings) -> None:
        self._gateway = gateway
        self._settings = settings

    async def handle_order_created(self, order: ShopifyOrder) -> ReconcileResult:
        """Entry point for ``orders/create``."""
        return await self.reconcile(order, ReconcileOperation.CREATED)

    async def handle_order_updated(self, order: ShopifyOrder) -> ReconcileResult:
        """Entry point for ``orders/updated`` (also carries refunds and cancellations)."""
        return await self.reconcile(order, ReconcileOperation.UPDATED)

    async def reconcile(
        self, order: ShopifyOrder, operation: ReconcileOperation
    ) -> ReconcileResult:
        """Ensure exactly one current deal exists for ``order``.

        Returns:
            ReconcileResult describing the deal touched and how.

        Raises:
            DealCreateError: The CRM returned no ID for a new deal.
            BitrixAPIError / httpx.HTTPError: Lookup or field update failed.
        """
        log = logger.bind(
            order_id=order.order_key,
            order_name=order.name,
            operation=operation.value,
            financial_status=order.financial_status,
        )
        log.info(
            "reconciler.started",
            line_items=len(order.line_items),
            total_price=order.total_price,
        )

        matches = await self.find_deals(order)

        if not matches:
            result = await self._create_deal(order)
        else:
            target, orphans = matches[0], matches[1:]
            if orphans:
                deal_lookup_anomalies_total.labels(kind="duplicate_deals").inc()
                log.error(
                    "reconciler.duplicate_deals",
                    deal_ids=[d.id for d in matches],
                    chosen_deal_id=target.id,
                    match_count=len(matches),
                )
            result = await self._update_deal(order, target)
            result.matched_count = len(matches)
            result.orphaned_deal_ids = [d.id for d in orphans]

        deal_reconciliations_total.labels(
            operation=operation.value, action=result.action.value
        ).inc()
        log.info(
            "reconciler.completed",
            deal_id=result.deal_id,
            action=result.action.value,
            product_rows_synced=result.product_rows_synced,
        )
        return result

    # ── Lookup ──────────────────────────────────────────────────────────────

    async def find_deals(self, order: ShopifyOrder) -> list[DealRecord]:
        """Deals whose join key matches the order, newest first."""
        order_key = order.order_key

        candidates = await self._gateway.list_deals(
            filter={ORDER_ID_FIELD: order_key},
            select=DEAL_LOOKUP_SELECT,
            order=_NEWEST_FIRST,
            limit=self._settings.DEAL_LOOKUP_LIMIT,
        )
        matches = self._exact_matches(order_key, candidates)
        if len(matches) < len(candidates):
            logger.warning(
                "reconciler.filter_returned_non_matches",
                order_id=order_key,
                returned=len(candidates),
                matched=len(matches),
            )
        if matches:
            return newest_first(matches)

        recent = await self._gateway.list_deals(
            filter=None,
            select=DEAL_LOOKUP_SELECT,
            order=_NEWEST_FIRST,
            limit=self._settings.DEAL_FALLBACK_SCAN_LIMIT,
        )
        matches = self._exact_matches(order_key, recent)
        if matches:
            deal_lookup_anomalies_total.labels(kind="fallback_match").inc()
            logger.warning(
                "reconciler.fallback_scan_matched",
                order_id=order_key,
                scanned=len(recent),
                deal_ids=[d.id for d in matches],
                stored_keys=[repr(d.order_id) for d in matches],
            )
        else:
            logger.info("reconciler.no_existing_deal", order_id=order_key, scanned=len(recent))
        return newest_first(matches)

    @staticmethod
    def _exact_matches(order_key: str, records: list[dict[str, Any]]) -> list[DealRecord]:
        wanted = canonical_order_key(order_key)
        matches: list[DealRecord] = []
        for record in records:
            deal = DealRecord.model_validate(record)
            if wanted is not None and canonical_order_key(deal.order_id) == wanted:
                matches.append(deal)
        return matches

    # ── Create ──────────────────────────────────────────────────────────────

    def _map(self, order: ShopifyOrder) -> MappedDeal:
        return map_order_to_deal(
            order,
            preorder_tags=self._settings.PREORDER_TAGS,
            sku_product_ids=self._settings.BITRIX_SKU_PRODUCT_MAP,
        )

    async def _create_deal(self, order: ShopifyOrder) -> ReconcileResult:
        category = resolve_category(order.tag_list, self._settings.PREORDER_TAGS)
        category_id = category_id_for(category, self._settings)
        mapped = self._map(order)

        fields = {k: v for k, v in mapped.fields.items() if v is not None}
        fields["CATEGORY_ID"] = category_id
        fields[ORDER_ID_FIELD] = order.order_key
        fields[PAYMENT_STATUS_FIELD] = financial_status_to_payment_status(order.financial_status)
        stage = financial_status_to_stage(order.financial_status, category, category_id, None)
        if stage is not None:
            fields["STAGE_ID"] = stage

        contact_id = await self._upsert_contact(order)
        if contact_id:
            fields["CONTACT_ID"] = contact_id

        deal_id = await self._gateway.create_deal(fields)
        if not deal_id:
            logger.error("reconciler.deal_create_failed", order_id=order.order_key)
            raise DealCreateError(f"CRM assigned no ID to the deal for order {order.order_key}")

        logger.info(
            "reconciler.deal_created",
            order_id=order.order_key,
            deal_id=deal_id,
            category_id=category_id,
            stage_id=stage,
            contact_id=contact_id,
        )

        rows_synced = False
        if mapped.product_rows:
            rows_synced = await self._replace_product_rows(deal_id, mapped)

        return ReconcileResult(
            deal_id=str(deal_id),
            action=ReconcileAction.CREATED,
            product_rows_synced=rows_synced,
        )

    async def _upsert_contact(self, order: ShopifyOrder) -> str | None:
        try:
            return await self._gateway.upsert_contact(order)
        except Exception as exc:
            logger.warning(
                "reconciler.contact_upsert_failed",
                order_id=order.order_key,
                error=str(exc),
            )
            return None

    # ── Update ──────────────────────────────────────────────────────────────

    async def _update_deal(self, order: ShopifyOrder, deal: DealRecord) -> ReconcileResult:
        category = resolve_category(order.tag_list, self._settings.PREORDER_TAGS)
        category_id = category_id_for(category, self._settings)
        current_category_id = self._stored_category_id(deal)
        mapped = self._map(order)

        fields: dict[str, Any] = {
            "OPPORTUNITY": mapped.fields["OPPORTUNITY"],
            TOTAL_DISCOUNT_FIELD: mapped.fields[TOTAL_DISCOUNT_FIELD],
            TOTAL_TAX_FIELD: mapped.fields[TOTAL_TAX_FIELD],
            SHIPPING_PRICE_FIELD: mapped.fields[SHIPPING_PRICE_FIELD],
            PAYMENT_STATUS_FIELD: financial_status_to_payment_status(order.financial_status),
        }

        if category_id != current_category_id:
            fields["CATEGORY_ID"] = category_id
            logger.info(
                "reconciler.category_changed",
                deal_id=deal.id,
                from_category_id=current_category_id,
                to_category_id=category_id,
            )

        if normalize_status(order.financial_status) == PARTIAL_REFUND_STATUS:
            logger.info(
                "reconciler.stage_kept_partial_refund",
                deal_id=deal.id,
                stage_id=deal.stage_id,
            )
        else:
            stage = financial_status_to_stage(
                order.financial_status, category, category_id, deal.stage_id
            )
            if stage is not None:
                fields["STAGE_ID"] = stage
                logger.info(
                    "reconciler.stage_resolved",
                    deal_id=deal.id,
                    from_stage_id=deal.stage_id,
                    to_stage_id=stage,
                )

        for code in (ORDER_TYPE_FIELD, DELIVERY_METHOD_FIELD):
            if mapped.fields.get(code):
                fields[code] = mapped.fields[code]

        try:
            await self._gateway.update_deal(deal.id, fields)
        except Exception:
            logger.error("reconciler.deal_update_failed", deal_id=deal.id, exc_info=True)
            # Rows are replaced whatever happened to the field update.
            await self._replace_product_rows(deal.id, mapped)
            raise
        logger.info("reconciler.deal_updated", deal_id=deal.id, fields=sorted(fields))

        rows_synced = await self._replace_product_rows(deal.id, mapped)

        return ReconcileResult(
            deal_id=deal.id,
            action=ReconcileAction.UPDATED,
            product_rows_synced=rows_synced,
        )

    def _stored_category_id(self, deal: DealRecord) -> int:
        try:
            return int(deal.category_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return self._settings.BITRIX_CATEGORY_STOCK

    async def _replace_product_rows(self, deal_id: str, mapped: MappedDeal) -> bool:
        """Overwrite the deal's product rows; failures are logged, not raised."""
        try:
            await self._gateway.set_product_rows(deal_id, mapped.product_rows)
        except Exception as exc:
            logger.error(
                "reconciler.product_rows_failed",
                deal_id=deal_id,
                row_count=len(mapped.product_rows),
                error=str(exc),
            )
            return False
        logger.info(
            "reconciler.product_rows_set",
            deal_id=deal_id,
            row_count=len(mapped.product_rows),
        )
        return True
