"""CRM gateway abstract base class -- the deal operations the order sync consumes.

The OrderReconciler only talks to this interface. BitrixGateway is the
production implementation; tests use an in-memory fake.

Contract notes:
- list_deals filter matching is not trusted; callers re-check matches.
- create_deal returns None (rather than raising) when the CRM rejects the
  record, so callers must treat an empty result as a failure.
- set_product_rows replaces the whole row collection.
- upsert_contact is best effort and may return None.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from src.app.deals.schemas import ProductRow, ShopifyOrder


class CRMGateway(ABC):
    """Abstract interface for the CRM deal operations used by the sync.

    Methods:
        list_deals: Filtered, sorted, bounded deal search.
        create_deal: Create a deal, return its id or None.
        update_deal: Overwrite deal fields by id.
        set_product_rows: Replace a deal's product rows.
        upsert_contact: Find or create the order's contact, return its id.
    """

    @abstractmethod
    async def list_deals(
        self,
        filter: dict[str, Any] | None,
        select: list[str],
        order: dict[str, str],
        limit: int,
    ) -> list[dict[str, Any]]:
        """Return at most ``limit`` deal records matching ``filter``."""
        ...

    @abstractmethod
    async def create_deal(self, fields: dict[str, Any]) -> str | None:
        """Create a deal, return the assigned ID or None on CRM rejection."""
        ...

    @abstractmethod
    async def update_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        """Update deal fields by ID."""
        ...

    @abstractmethod
    async def set_product_rows(self, deal_id: str, rows: list[ProductRow]) -> None:
        """Replace the product rows of a deal (empty list clears them)."""
        ...

    @abstractmethod
    async def upsert_contact(self, order: ShopifyOrder) -> str | None:
        """Find or create the contact for an order, return its ID."""
        ...
