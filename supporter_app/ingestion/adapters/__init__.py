"""
Source API clients.

``build_clients`` turns app config into whichever clients have credentials;
jobs treat a missing client as "source not configured".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .futureticketing import DEFAULT_MAX_PAGES, FutureTicketingClient
from .gocardless import GoCardlessClient
from .http import HTTPSettings, SourceHTTPClient, build_session
from .mailchimp import MailchimpClient
from .shopify import ShopifyClient
from .stripe import StripeClient


@dataclass
class SourceClients:
    shopify: ShopifyClient | None = None
    futureticketing: FutureTicketingClient | None = None
    stripe: StripeClient | None = None
    gocardless: GoCardlessClient | None = None
    mailchimp: MailchimpClient | None = None


def build_clients(config: Mapping[str, Any]) -> SourceClients:
    settings = HTTPSettings.from_config(config)
    clients = SourceClients()
    if config.get("SHOPIFY_SHOP_DOMAIN") and config.get("SHOPIFY_ACCESS_TOKEN"):
        clients.shopify = ShopifyClient(
            config["SHOPIFY_SHOP_DOMAIN"],
            config["SHOPIFY_ACCESS_TOKEN"],
            api_version=config.get("SHOPIFY_API_VERSION") or "2024-01",
            settings=settings,
        )
    if config.get("FUTURE_TICKETING_API_URL") and config.get("FUTURE_TICKETING_API_KEY"):
        clients.futureticketing = FutureTicketingClient(
            config["FUTURE_TICKETING_API_URL"],
            config["FUTURE_TICKETING_API_KEY"],
            max_pages=int(config.get("FUTURE_TICKETING_MAX_PAGES") or DEFAULT_MAX_PAGES),
            settings=settings,
        )
    if config.get("STRIPE_API_KEY"):
        clients.stripe = StripeClient(config["STRIPE_API_KEY"], settings=settings)
    if config.get("GOCARDLESS_ACCESS_TOKEN"):
        clients.gocardless = GoCardlessClient(
            config["GOCARDLESS_ACCESS_TOKEN"],
            environment=config.get("GOCARDLESS_ENVIRONMENT") or "live",
            settings=settings,
        )
    if config.get("MAILCHIMP_API_KEY"):
        clients.mailchimp = MailchimpClient(
            config["MAILCHIMP_API_KEY"],
            dc=config.get("MAILCHIMP_DC") or None,
            settings=settings,
        )
    return clients


__all__ = [
    "SourceClients",
    "build_clients",
    "HTTPSettings",
    "SourceHTTPClient",
    "build_session",
    "ShopifyClient",
    "FutureTicketingClient",
    "StripeClient",
    "GoCardlessClient",
    "MailchimpClient",
]
