"""Tests for OrderReconciler against the in-memory CRM gateway.

Covers idempotent create, full product-row replacement, stage handling for
refunds, tag-driven pipelines, duplicate-deal resolution, the two-phase
lookup, and which collaborator failures are fatal.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.app.config import Settings
from src.app.deals.crm.bitrix import BitrixAPIError
from src.app.deals.crm.field_mapping import (
    DELIVERY_METHOD_FIELD,
    ORDER_ID_FIELD,
    PAYMENT_STATUS_FIELD,
    TOTAL_DISCOUNT_FIELD,
)
from src.app.deals.reconciler import (
    DealCreateError,
    OrderReconciler,
    canonical_order_key,
    newest_first,
)
from src.app.deals.schemas import DealRecord, ReconcileAction

ORDER_KEY = "5512345678901"


# ── Helpers ──────────────────────────────────────────────────────────────────


class TestCanonicalOrderKey:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (5512345678901, ORDER_KEY),
            ("5512345678901", ORDER_KEY),
            (" 5512345678901 ", ORDER_KEY),
            ("5512345678901.0", ORDER_KEY),
            (5512345678901.0, ORDER_KEY),
            ("gid://shopify/Order/1", "gid://shopify/Order/1"),
            ("12.5", "12.5"),
            ("12.50", "12.5"),
            ("0012", "12"),
            ("-0.0", "0"),
        ],
    )
    def test_normalizes(self, raw, expected):
        assert canonical_order_key(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", False])
    def test_empty_is_none(self, raw):
        assert canonical_order_key(raw) is None

    @pytest.mark.parametrize("raw", ["1e5000", "1e20000000", "1E3", "Infinity", "NaN"])
    def test_exponent_and_special_forms_stay_text(self, raw):
        assert canonical_order_key(raw) == raw


class TestNewestFirst:
    def test_sorts_by_creation_then_id(self):
        deals = [
            DealRecord(ID="5", DATE_CREATE="2025-01-01T10:00:00+03:00"),
            DealRecord(ID="9", DATE_CREATE="2025-03-01T10:00:00+03:00"),
            DealRecord(ID="7", DATE_CREATE="2025-03-01T10:00:00+03:00"),
            DealRecord(ID="3"),
        ]
        assert [d.id for d in newest_first(deals)] == ["9", "7", "5", "3"]


# ── Create ───────────────────────────────────────────────────────────────────


class TestCreate:
    async def test_creates_deal_with_stage_contact_and_rows(
        self, reconciler, crm_gateway, order_factory
    ):
        result = await reconciler.handle_order_created(order_factory())

        assert result.action == ReconcileAction.CREATED
        assert result.product_rows_synced is True

        [fields] = crm_gateway.calls_to("create_deal")
        assert fields["CATEGORY_ID"] == 2
        assert fields["STAGE_ID"] == "C2:WON"
        assert fields[ORDER_ID_FIELD] == ORDER_KEY
        assert fields[PAYMENT_STATUS_FIELD] == "50"
        assert fields["CONTACT_ID"] == "900"
        # zero discount is left blank rather than written as 0
        assert TOTAL_DISCOUNT_FIELD not in fields

        rows = crm_gateway.product_rows[result.deal_id]
        assert [(r.product_id, r.product_name, r.quantity) for r in rows] == [
            (501, "Tea set", 2),
            (0, "Cup", 1),
        ]

    async def test_same_create_delivered_twice_creates_once(
        self, reconciler, crm_gateway, order_factory
    ):
        first = await reconciler.handle_order_created(order_factory())
        second = await reconciler.handle_order_created(order_factory())

        assert len(crm_gateway.calls_to("create_deal")) == 1
        assert first.action == ReconcileAction.CREATED
        assert second.action == ReconcileAction.UPDATED
        assert second.deal_id == first.deal_id
        assert len(crm_gateway.deals) == 1

    async def test_updated_for_unknown_order_creates(self, reconciler, crm_gateway, order_factory):
        result = await reconciler.handle_order_updated(order_factory())

        assert result.action == ReconcileAction.CREATED
        assert len(crm_gateway.deals) == 1

    @pytest.mark.parametrize("tag", ["pre-order", "PRE-ORDER", "Pre-Order"])
    async def test_preorder_tag_routes_to_preorder_pipeline(
        self, reconciler, crm_gateway, order_factory, tag
    ):
        await reconciler.handle_order_created(order_factory(tags=f"gift, {tag}"))

        [fields] = crm_gateway.calls_to("create_deal")
        assert fields["CATEGORY_ID"] == 8
        assert fields["STAGE_ID"] == "C8:EXECUTING"

    async def test_untagged_order_routes_to_stock_pipeline(
        self, reconciler, crm_gateway, order_factory
    ):
        await reconciler.handle_order_created(order_factory(tags="gift"))

        [fields] = crm_gateway.calls_to("create_deal")
        assert fields["CATEGORY_ID"] == 2

    async def test_unknown_status_creates_without_stage(
        self, reconciler, crm_gateway, order_factory
    ):
        await reconciler.handle_order_created(order_factory(financial_status="expired"))

        [fields] = crm_gateway.calls_to("create_deal")
        assert "STAGE_ID" not in fields
        assert fields[PAYMENT_STATUS_FIELD] == "44"

    async def test_discount_falls_back_to_aggregate(self, reconciler, crm_gateway, order_factory):
        await reconciler.handle_order_created(
            order_factory(discount_codes=[], total_discounts="120.50")
        )

        [fields] = crm_gateway.calls_to("create_deal")
        assert fields[TOTAL_DISCOUNT_FIELD] == 120.5

    async def test_order_without_items_skips_rows(self, reconciler, crm_gateway, order_factory):
        result = await reconciler.handle_order_created(order_factory(line_items=[]))

        assert crm_gateway.calls_to("set_product_rows") == []
        assert result.product_rows_synced is False


# ── Update ───────────────────────────────────────────────────────────────────


class TestUpdate:
    async def test_rows_shrinking_to_zero_clears_deal_rows(
        self, reconciler, crm_gateway, order_factory
    ):
        created = await reconciler.handle_order_created(order_factory())
        assert len(crm_gateway.product_rows[created.deal_id]) == 2

        result = await reconciler.handle_order_updated(order_factory(line_items=[]))

        assert result.deal_id == created.deal_id
        assert crm_gateway.product_rows[created.deal_id] == []
        assert result.product_rows_synced is True

    async def test_partial_refund_keeps_stage(self, reconciler, crm_gateway, order_factory):
        deal_id = crm_gateway.seed_deal(ORDER_KEY, STAGE_ID="C2:WON")

        await reconciler.handle_order_updated(
            order_factory(financial_status="partially_refunded", current_total_price="1000.00")
        )

        [(updated_id, fields)] = crm_gateway.calls_to("update_deal")
        assert updated_id == deal_id
        assert "STAGE_ID" not in fields
        assert fields["OPPORTUNITY"] == 1000.0
        assert fields[PAYMENT_STATUS_FIELD] == "52"
        assert crm_gateway.deals[deal_id]["STAGE_ID"] == "C2:WON"

    async def test_full_refund_moves_to_lost_stage(self, reconciler, crm_gateway, order_factory):
        deal_id = crm_gateway.seed_deal(ORDER_KEY, STAGE_ID="C2:WON")

        await reconciler.handle_order_updated(order_factory(financial_status="refunded"))

        assert crm_gateway.deals[deal_id]["STAGE_ID"] == "C2:LOSE"
        assert crm_gateway.deals[deal_id][PAYMENT_STATUS_FIELD] == "54"

    async def test_unknown_status_keeps_stage(self, reconciler, crm_gateway, order_factory):
        deal_id = crm_gateway.seed_deal(ORDER_KEY, STAGE_ID="C2:PREPARATION")

        await reconciler.handle_order_updated(order_factory(financial_status="expired"))

        assert crm_gateway.deals[deal_id]["STAGE_ID"] == "C2:PREPARATION"
        assert crm_gateway.deals[deal_id][PAYMENT_STATUS_FIELD] == "44"

    async def test_always_writes_money_fields(self, reconciler, crm_gateway, order_factory):
        crm_gateway.seed_deal(ORDER_KEY)

        await reconciler.handle_order_updated(order_factory(total_discounts="0.00"))

        [(_, fields)] = crm_gateway.calls_to("update_deal")
        assert fields["OPPORTUNITY"] == 1500.0
        # explicit None clears a previously written discount
        assert TOTAL_DISCOUNT_FIELD in fields
        assert fields[TOTAL_DISCOUNT_FIELD] is None

    async def test_category_written_only_when_changed(
        self, reconciler, crm_gateway, order_factory
    ):
        deal_id = crm_gateway.seed_deal(ORDER_KEY, CATEGORY_ID="2", STAGE_ID="C2:NEW")

        await reconciler.handle_order_updated(order_factory())
        [(_, fields)] = crm_gateway.calls_to("update_deal")
        assert "CATEGORY_ID" not in fields

        await reconciler.handle_order_updated(order_factory(tags="pre-order"))
        (_, fields) = crm_gateway.calls_to("update_deal")[1]
        assert fields["CATEGORY_ID"] == 8
        assert fields["STAGE_ID"] == "C8:EXECUTING"
        assert crm_gateway.deals[deal_id]["CATEGORY_ID"] == 8

    async def test_missing_stored_category_counts_as_stock(
        self, reconciler, crm_gateway, order_factory
    ):
        crm_gateway.seed_deal(ORDER_KEY, CATEGORY_ID=None)

        await reconciler.handle_order_updated(order_factory())

        [(_, fields)] = crm_gateway.calls_to("update_deal")
        assert "CATEGORY_ID" not in fields

    async def test_empty_delivery_method_is_not_written(
        self, reconciler, crm_gateway, order_factory
    ):
        deal_id = crm_gateway.seed_deal(ORDER_KEY, **{DELIVERY_METHOD_FIELD: "64"})

        await reconciler.handle_order_updated(order_factory(shipping_lines=[]))

        [(_, fields)] = crm_gateway.calls_to("update_deal")
        assert DELIVERY_METHOD_FIELD not in fields
        assert crm_gateway.deals[deal_id][DELIVERY_METHOD_FIELD] == "64"

    async def test_update_does_not_touch_contact(self, reconciler, crm_gateway, order_factory):
        crm_gateway.seed_deal(ORDER_KEY)

        await reconciler.handle_order_updated(order_factory())

        assert crm_gateway.calls_to("upsert_contact") == []


# ── Duplicate Deals ──────────────────────────────────────────────────────────


class TestDuplicateDeals:
    async def test_latest_of_three_is_updated(self, reconciler, crm_gateway, order_factory):
        oldest = crm_gateway.seed_deal(ORDER_KEY, DATE_CREATE="2025-01-01T10:00:00+03:00")
        newest = crm_gateway.seed_deal(ORDER_KEY, DATE_CREATE="2025-03-01T10:00:00+03:00")
        middle = crm_gateway.seed_deal(ORDER_KEY, DATE_CREATE="2025-02-01T10:00:00+03:00")

        result = await reconciler.handle_order_updated(order_factory(financial_status="refunded"))

        assert result.deal_id == newest
        assert result.matched_count == 3
        assert result.orphaned_deal_ids == [middle, oldest]
        assert [deal_id for deal_id, _ in crm_gateway.calls_to("update_deal")] == [newest]
        assert [deal_id for deal_id, _ in crm_gateway.calls_to("set_product_rows")] == [newest]
        assert crm_gateway.deals[oldest]["STAGE_ID"] == "C2:NEW"
        assert crm_gateway.deals[middle]["STAGE_ID"] == "C2:NEW"


# ── Lookup ───────────────────────────────────────────────────────────────────


class TestLookup:
    async def test_untrusted_filter_results_are_rechecked(
        self, reconciler, crm_gateway, order_factory
    ):
        crm_gateway.filter_mode = "ignore"
        other = crm_gateway.seed_deal("5512345678999")
        mine = crm_gateway.seed_deal(ORDER_KEY)
        crm_gateway.seed_deal("55123456789")

        result = await reconciler.handle_order_updated(order_factory())

        assert result.deal_id == mine
        assert result.matched_count == 1
        assert other not in [deal_id for deal_id, _ in crm_gateway.calls_to("update_deal")]

    async def test_fallback_scan_finds_differently_formatted_key(
        self, reconciler, crm_gateway, order_factory
    ):
        crm_gateway.filter_mode = "miss"
        deal_id = crm_gateway.seed_deal(" 5512345678901.0 ")

        result = await reconciler.handle_order_updated(order_factory())

        assert result.action == ReconcileAction.UPDATED
        assert result.deal_id == deal_id
        lookups = crm_gateway.calls_to("list_deals")
        assert lookups[0]["filter"] == {ORDER_ID_FIELD: ORDER_KEY}
        assert lookups[1] == {"filter": None, "limit": 100}

    async def test_fallback_scan_is_bounded(self, crm_gateway, settings, order_factory):
        crm_gateway.filter_mode = "miss"
        crm_gateway.seed_deal(ORDER_KEY)  # oldest, outside the scan window
        crm_gateway.seed_deal("1")
        crm_gateway.seed_deal("2")
        bounded = Settings(**{**settings.model_dump(), "DEAL_FALLBACK_SCAN_LIMIT": 2})

        result = await OrderReconciler(crm_gateway, bounded).handle_order_updated(order_factory())

        assert result.action == ReconcileAction.CREATED
        assert crm_gateway.calls_to("list_deals")[1]["limit"] == 2

    async def test_exponent_shaped_key_creates_deal(self, reconciler, crm_gateway, order_factory):
        crm_gateway.filter_mode = "ignore"
        crm_gateway.seed_deal("5512345678901")

        result = await reconciler.handle_order_updated(order_factory(id="1e5000"))

        assert result.action == ReconcileAction.CREATED
        assert crm_gateway.calls_to("create_deal")[0][ORDER_ID_FIELD] == "1e5000"

    async def test_exact_match_skips_fallback_scan(self, reconciler, crm_gateway, order_factory):
        crm_gateway.seed_deal(ORDER_KEY)

        await reconciler.handle_order_updated(order_factory())

        assert len(crm_gateway.calls_to("list_deals")) == 1

    async def test_lookup_failure_propagates(self, reconciler, crm_gateway, order_factory):
        with patch.object(
            crm_gateway, "list_deals", new_callable=AsyncMock,
            side_effect=httpx.ConnectError("connection refused"),
        ):
            with pytest.raises(httpx.ConnectError):
                await reconciler.handle_order_created(order_factory())

        assert crm_gateway.calls_to("create_deal") == []


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    async def test_create_without_id_raises(self, reconciler, crm_gateway, order_factory):
        crm_gateway.fail_create = True

        with pytest.raises(DealCreateError):
            await reconciler.handle_order_created(order_factory())

        assert crm_gateway.calls_to("set_product_rows") == []

    async def test_contact_failure_is_not_fatal(self, reconciler, crm_gateway, order_factory):
        crm_gateway.fail_contact = True

        result = await reconciler.handle_order_created(order_factory())

        assert result.action == ReconcileAction.CREATED
        [fields] = crm_gateway.calls_to("create_deal")
        assert "CONTACT_ID" not in fields

    async def test_no_contact_found_is_not_fatal(self, reconciler, crm_gateway, order_factory):
        result = await reconciler.handle_order_created(order_factory(customer=None, email=None))

        assert result.action == ReconcileAction.CREATED
        [fields] = crm_gateway.calls_to("create_deal")
        assert "CONTACT_ID" not in fields

    async def test_row_failure_on_create_is_not_fatal(
        self, reconciler, crm_gateway, order_factory
    ):
        crm_gateway.fail_rows = True

        result = await reconciler.handle_order_created(order_factory())

        assert result.action == ReconcileAction.CREATED
        assert result.product_rows_synced is False
        assert result.deal_id in crm_gateway.deals

    async def test_row_failure_on_update_is_not_fatal(
        self, reconciler, crm_gateway, order_factory
    ):
        crm_gateway.seed_deal(ORDER_KEY)
        crm_gateway.fail_rows = True

        result = await reconciler.handle_order_updated(order_factory())

        assert result.action == ReconcileAction.UPDATED
        assert result.product_rows_synced is False

    async def test_update_failure_raises_after_rows_replaced(
        self, reconciler, crm_gateway, order_factory
    ):
        deal_id = crm_gateway.seed_deal(ORDER_KEY)
        crm_gateway.fail_update = True

        with pytest.raises(BitrixAPIError):
            await reconciler.handle_order_updated(order_factory())

        assert len(crm_gateway.product_rows[deal_id]) == 2
