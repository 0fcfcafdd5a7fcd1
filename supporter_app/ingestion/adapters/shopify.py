"""Shopify Admin REST client (order listing for reconciliation)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator

from supporter_app.models import SourceSystem

from .http import HTTPSettings, SourceHTTPClient

DEFAULT_API_VERSION = "2024-01"
PAGE_SIZE = 250


class ShopifyClient(SourceHTTPClient):
    source_system = SourceSystem.SHOPIFY.value

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: str = DEFAULT_API_VERSION,
        settings: HTTPSettings | None = None,
        session=None,
    ):
        super().__init__(
            f"https://{shop_domain}/admin/api/{api_version}",
            headers={"X-Shopify-Access-Token": access_token, "Accept": "application/json"},
            settings=settings,
            session=session,
        )

    def iter_orders_since(self, since: datetime) -> Iterator[dict[str, Any]]:
        """Orders updated since ``since``, paged by ascending id."""

        params: dict[str, Any] = {
            "status": "any",
            "updated_at_min": since.isoformat(),
            "limit": PAGE_SIZE,
            "order": "id asc",
        }
        while True:
            payload = self.get("orders.json", params=params) or {}
            orders = payload.get("orders") or []
            yield from orders
            if len(orders) < PAGE_SIZE:
                return
            params = {**params, "since_id": orders[-1]["id"]}
