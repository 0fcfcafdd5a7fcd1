"""
Future Ticketing REST client.

Listings are paged. Hitting the page cap while the API still reports more
records raises ``PageLimitReached`` after yielding what was fetched, so the
poller keeps that kind's checkpoint and the next poll covers the rest.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterator

from supporter_app.ingestion.errors import PageLimitReached
from supporter_app.models import SourceSystem

from .http import HTTPSettings, SourceHTTPClient

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 50


def _records(payload: Any) -> tuple[list[dict[str, Any]], bool]:
    """The API answers with either a bare list or ``{data: [...], pagination: {hasMore}}``."""

    if isinstance(payload, list):
        return payload, False
    if isinstance(payload, dict):
        data = payload.get("data") or []
        more = bool((payload.get("pagination") or {}).get("hasMore"))
        return list(data), more
    return [], False


class FutureTicketingClient(SourceHTTPClient):
    source_system = SourceSystem.FUTURE_TICKETING.value

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        max_pages: int = DEFAULT_MAX_PAGES,
        settings: HTTPSettings | None = None,
        session=None,
    ):
        super().__init__(
            api_url,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
            settings=settings,
            session=session,
        )
        self.max_pages = max_pages

    def _paged(self, path: str, since_param: str, since: datetime | None) -> Iterator[dict[str, Any]]:
        for page in range(1, self.max_pages + 1):
            params: dict[str, Any] = {"page": page, "pageSize": PAGE_SIZE}
            if since is not None:
                params[since_param] = since.isoformat()
            records, more = _records(self.get(path, params=params))
            yield from records
            if not more:
                return
        logger.warning(
            "Future Ticketing %s listing stopped at page cap",
            path,
            extra={"source_system": self.source_system, "max_pages": self.max_pages},
        )
        raise PageLimitReached(self.source_system, f"{path} still has more records after {self.max_pages} pages")

    def iter_customers(self, since: datetime | None = None) -> Iterator[dict[str, Any]]:
        return self._paged("customers", "modifiedSince", since)

    def iter_orders(self, since: datetime | None = None) -> Iterator[dict[str, Any]]:
        return self._paged("orders", "sinceDate", since)

    def iter_entries(self, since: datetime | None = None) -> Iterator[dict[str, Any]]:
        return self._paged("entries", "sinceDate", since)
