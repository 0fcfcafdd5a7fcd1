"""
Shared ``requests`` plumbing for source API clients.

Each client gets a session with a bounded urllib3 ``Retry`` (backoff on 429
and 5xx) and an explicit per-request timeout. Failures that survive the
retries surface as ``SourceAPIError`` / ``TransientSourceError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from supporter_app.ingestion.errors import SourceAPIError, TransientSourceError

logger = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class HTTPSettings:
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 0.5

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "HTTPSettings":
        return cls(
            timeout_seconds=float(config.get("SOURCE_HTTP_TIMEOUT_SECONDS", cls.timeout_seconds)),
            max_retries=int(config.get("SOURCE_HTTP_MAX_RETRIES", cls.max_retries)),
        )


def build_session(settings: HTTPSettings) -> requests.Session:
    retry = Retry(
        total=settings.max_retries,
        backoff_factor=settings.backoff_factor,
        status_forcelist=RETRY_STATUSES,
        allowed_methods=frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"}),
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session = requests.Session()
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class SourceHTTPClient:
    """Base for JSON API clients bound to one source system."""

    source_system: str = "unknown"

    def __init__(
        self,
        base_url: str,
        *,
        headers: Mapping[str, str] | None = None,
        auth: Any = None,
        settings: HTTPSettings | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.settings = settings or HTTPSettings()
        self.session = session or build_session(self.settings)
        self.headers = dict(headers or {})
        self.auth = auth

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        url = path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self.headers,
                auth=self.auth,
                timeout=self.settings.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientSourceError(self.source_system, f"{method} {path} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise SourceAPIError(self.source_system, f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientSourceError(
                self.source_system,
                f"{method} {path} returned {status}",
                status_code=status,
            )
        if status >= 400:
            raise SourceAPIError(
                self.source_system,
                f"{method} {path} returned {status}: {response.text[:200]}",
                status_code=status,
            )
        if status == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise SourceAPIError(self.source_system, f"{method} {path} returned invalid JSON") from exc

    def get(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, *, json: Any = None) -> Any:
        return self.request("POST", path, json=json)
