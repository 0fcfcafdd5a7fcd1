"""GoCardless REST client (payment listing for reconciliation)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator

from supporter_app.models import SourceSystem

from .http import HTTPSettings, SourceHTTPClient

API_URLS = {
    "live": "https://api.gocardless.com",
    "sandbox": "https://api-sandbox.gocardless.com",
}
API_VERSION = "2015-07-06"
PAGE_SIZE = 500


class GoCardlessClient(SourceHTTPClient):
    source_system = SourceSystem.GOCARDLESS.value

    def __init__(self, access_token: str, *, environment: str = "live", settings: HTTPSettings | None = None, session=None):
        if environment not in API_URLS:
            raise ValueError(f"Unknown GoCardless environment '{environment}'")
        super().__init__(
            API_URLS[environment],
            headers={
                "Authorization": f"Bearer {access_token}",
                "GoCardless-Version": API_VERSION,
                "Accept": "application/json",
            },
            settings=settings,
            session=session,
        )

    def iter_payments_since(self, since: datetime) -> Iterator[dict[str, Any]]:
        params: dict[str, Any] = {"created_at[gt]": since.isoformat(), "limit": PAGE_SIZE}
        while True:
            payload = self.get("payments", params=params) or {}
            yield from payload.get("payments") or []
            after = ((payload.get("meta") or {}).get("cursors") or {}).get("after")
            if not after:
                return
            params = {**params, "after": after}

    def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        payload = self.get(f"customers/{customer_id}") or {}
        return payload.get("customers")
