"""Stripe REST client (charge listing for reconciliation)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator

from supporter_app.models import SourceSystem

from .http import HTTPSettings, SourceHTTPClient

STRIPE_API_URL = "https://api.stripe.com/v1"
PAGE_SIZE = 100


class StripeClient(SourceHTTPClient):
    source_system = SourceSystem.STRIPE.value

    def __init__(self, api_key: str, *, base_url: str = STRIPE_API_URL, settings: HTTPSettings | None = None, session=None):
        super().__init__(
            base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            settings=settings,
            session=session,
        )

    def iter_charges_since(self, since: datetime) -> Iterator[dict[str, Any]]:
        params: dict[str, Any] = {"created[gte]": int(since.timestamp()), "limit": PAGE_SIZE}
        while True:
            payload = self.get("charges", params=params) or {}
            charges = payload.get("data") or []
            yield from charges
            if not payload.get("has_more") or not charges:
                return
            params = {**params, "starting_after": charges[-1]["id"]}
