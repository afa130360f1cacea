"""Bitrix24 CRM gateway over the REST incoming-webhook API.

Each call is a JSON POST to ``{webhook_base}/{method}.json``. Bitrix answers
with ``{"result": ...}`` on success and ``{"error", "error_description"}``
otherwise, usually with a 4xx status.

Transient failures (5xx, 429, connect errors, timeouts) are retried with
tenacity, 3 attempts, exponential backoff 1-10s; the last exception is
re-raised as is. Error payloads are not retried. Record-creating methods
(``crm.deal.add``, ``crm.contact.add``) are retried only on connect errors,
when the request cannot have reached Bitrix.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.deals.crm.adapter import CRMGateway
from src.app.deals.mapper import customer_email
from src.app.deals.schemas import ProductRow, ShopifyOrder

logger = structlog.get_logger(__name__)

# crm.*.list page size is fixed by Bitrix
PAGE_SIZE = 50

_bitrix_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)

# crm.deal.add and crm.contact.add: replay only when the request never left.
_bitrix_connect_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
    reraise=True,
)


class BitrixAPIError(Exception):
    """Bitrix24 returned an error payload for a call that must succeed."""

    def __init__(self, method: str, error: str, description: str = "") -> None:
        self.method = method
        self.error = error
        self.description = description
        detail = f": {description}" if description else ""
        super().__init__(f"{method} failed with {error}{detail}")


def _is_transient(response: httpx.Response) -> bool:
    return response.status_code >= 500 or response.status_code == 429


def _contact_phone(order: ShopifyOrder) -> str | None:
    if order.customer is not None and order.customer.phone:
        return order.customer.phone
    if order.phone:
        return order.phone
    if order.billing_address is not None and order.billing_address.phone:
        return order.billing_address.phone
    return None


class BitrixGateway(CRMGateway):
    """CRMGateway implementation backed by a Bitrix24 incoming webhook.

    Args:
        webhook_base: Webhook URL up to and including the token,
            e.g. ``https://example.bitrix24.com/rest/1/abc123``.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, webhook_base: str, timeout: float = 15.0) -> None:
        self._base_url = webhook_base.rstrip("/")
        self._timeout = timeout
        self._headers = {"Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    @_bitrix_retry
    async def _call(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """POST an idempotent REST method, retrying transient failures."""
        return await self._post(method, params)

    @_bitrix_connect_retry
    async def _call_no_replay(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """POST a record-creating REST method; retried only on connect failures."""
        return await self._post(method, params)

    async def _post(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """POST one REST method and return the decoded body.

        Raises:
            httpx.HTTPStatusError: 5xx or 429.
            BitrixAPIError: Webhook not configured or the body is not JSON.
        """
        if not self._base_url:
            raise BitrixAPIError(method, "NOT_CONFIGURED", "BITRIX_WEBHOOK_BASE is empty")

        async with self._client() as client:
            response = await client.post(f"{self._base_url}/{method}.json", json=params)
            if _is_transient(response):
                logger.warning(
                    "bitrix.transient_error",
                    method=method,
                    status_code=response.status_code,
                )
                response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                raise BitrixAPIError(
                    method, "INVALID_RESPONSE", f"HTTP {response.status_code}"
                ) from exc

        if not isinstance(data, dict):
            raise BitrixAPIError(method, "INVALID_RESPONSE", "body is not an object")
        return data

    async def _call_checked(
        self, method: str, params: dict[str, Any], *, replay: bool = True
    ) -> Any:
        """Call ``method`` and return ``result``, raising on an error payload."""
        call = self._call if replay else self._call_no_replay
        data = await call(method, params)
        if "error" in data:
            logger.error(
                "bitrix.api_error",
                method=method,
                error=data.get("error"),
                description=data.get("error_description"),
            )
            raise BitrixAPIError(method, str(data["error"]), data.get("error_description") or "")
        return data.get("result")

    # ── Deals ───────────────────────────────────────────────────────────────

    async def list_deals(
        self,
        filter: dict[str, Any] | None,
        select: list[str],
        order: dict[str, str],
        limit: int,
    ) -> list[dict[str, Any]]:
        """Page through ``crm.deal.list`` until ``limit`` records are collected."""
        deals: list[dict[str, Any]] = []
        start: int | None = 0
        while start is not None and len(deals) < limit:
            params: dict[str, Any] = {"order": order, "select": select, "start": start}
            if filter:
                params["filter"] = filter
            data = await self._call("crm.deal.list", params)
            if "error" in data:
                raise BitrixAPIError(
                    "crm.deal.list", str(data["error"]), data.get("error_description") or ""
                )
            page = data.get("result") or []
            deals.extend(page)
            start = data.get("next") if page else None

        logger.debug(
            "bitrix.deals_listed",
            filter=filter,
            returned=min(len(deals), limit),
        )
        return deals[:limit]

    async def create_deal(self, fields: dict[str, Any]) -> str | None:
        data = await self._call_no_replay("crm.deal.add", {"fields": fields})
        if "error" in data:
            logger.error(
                "bitrix.deal_add_rejected",
                error=data.get("error"),
                description=data.get("error_description"),
            )
            return None
        result = data.get("result")
        if not result:
            return None
        logger.info("bitrix.deal_added", deal_id=result)
        return str(result)

    async def update_deal(self, deal_id: str, fields: dict[str, Any]) -> None:
        await self._call_checked("crm.deal.update", {"id": deal_id, "fields": fields})
        logger.debug("bitrix.deal_updated", deal_id=deal_id, fields=sorted(fields))

    async def set_product_rows(self, deal_id: str, rows: list[ProductRow]) -> None:
        await self._call_checked(
            "crm.deal.productrows.set",
            {"id": deal_id, "rows": [row.to_bitrix() for row in rows]},
        )
        logger.debug("bitrix.product_rows_set", deal_id=deal_id, row_count=len(rows))

    # ── Contacts ────────────────────────────────────────────────────────────

    async def _find_contact(self, field: str, value: str) -> str | None:
        result = await self._call_checked(
            "crm.contact.list",
            {"filter": {field: value}, "select": ["ID"]},
        )
        if result:
            return str(result[0]["ID"])
        return None

    async def upsert_contact(self, order: ShopifyOrder) -> str | None:
        """Find the order's contact by e-mail, then phone; create it if absent.

        Returns:
            Contact ID, or None when the order has neither e-mail nor phone.
        """
        email = customer_email(order)
        phone = _contact_phone(order)
        if not email and not phone:
            return None

        if email:
            contact_id = await self._find_contact("EMAIL", email)
            if contact_id:
                logger.debug("bitrix.contact_found", contact_id=contact_id, by="email")
                return contact_id
        if phone:
            contact_id = await self._find_contact("PHONE", phone)
            if contact_id:
                logger.debug("bitrix.contact_found", contact_id=contact_id, by="phone")
                return contact_id

        first_name = order.customer.first_name if order.customer else None
        last_name = order.customer.last_name if order.customer else None
        if not first_name and not last_name and order.billing_address is not None:
            first_name = order.billing_address.first_name
            last_name = order.billing_address.last_name

        fields: dict[str, Any] = {
            "NAME": first_name or "",
            "LAST_NAME": last_name or "",
        }
        if email:
            fields["EMAIL"] = [{"VALUE": email, "VALUE_TYPE": "WORK"}]
        if phone:
            fields["PHONE"] = [{"VALUE": phone, "VALUE_TYPE": "WORK"}]

        result = await self._call_checked(
            "crm.contact.add", {"fields": fields}, replay=False
        )
        if not result:
            return None
        logger.info("bitrix.contact_created", contact_id=result, order_id=order.order_key)
        return str(result)
