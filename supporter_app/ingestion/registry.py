"""
Source system registry.

Configured ``INGESTION_SOURCES`` are validated against this table at start-up,
before any processor or API client is built.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class SourceDescriptor:
    """Metadata describing an ingestion source."""

    name: str
    title: str
    delivery: str
    required_settings: Tuple[str, ...] = ()
    summary: str | None = None


def get_source_registry() -> Mapping[str, SourceDescriptor]:
    return OrderedDict(
        (
            (
                "shopify",
                SourceDescriptor(
                    name="shopify",
                    title="Shopify",
                    delivery="webhook",
                    required_settings=("SHOPIFY_SHOP_DOMAIN", "SHOPIFY_ACCESS_TOKEN"),
                    summary="Shop orders and customer profiles.",
                ),
            ),
            (
                "futureticketing",
                SourceDescriptor(
                    name="futureticketing",
                    title="Future Ticketing",
                    delivery="poll",
                    required_settings=("FUTURE_TICKETING_API_URL", "FUTURE_TICKETING_API_KEY"),
                    summary="Ticket orders, stadium entries and customers.",
                ),
            ),
            (
                "stripe",
                SourceDescriptor(
                    name="stripe",
                    title="Stripe",
                    delivery="webhook",
                    required_settings=("STRIPE_API_KEY",),
                    summary="Card payments, invoices and membership billing.",
                ),
            ),
            (
                "gocardless",
                SourceDescriptor(
                    name="gocardless",
                    title="GoCardless",
                    delivery="webhook",
                    required_settings=("GOCARDLESS_ACCESS_TOKEN",),
                    summary="Direct debit payments and mandates.",
                ),
            ),
            (
                "mailchimp",
                SourceDescriptor(
                    name="mailchimp",
                    title="Mailchimp",
                    delivery="webhook",
                    required_settings=("MAILCHIMP_API_KEY",),
                    summary="Email clicks in; managed tags out.",
                ),
            ),
        )
    )


def resolve_sources(
    configured: Sequence[str],
    registry: Mapping[str, SourceDescriptor] | None = None,
) -> Iterable[SourceDescriptor]:
    """
    Map configured source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown ingestion sources configured: "
            + ", ".join(unknown)
            + ". Supported sources: "
            + ", ".join(registry)
            + "."
        )
    return tuple(registry[source] for source in configured)


def missing_settings(descriptor: SourceDescriptor, config: Mapping[str, object]) -> list[str]:
    return [name for name in descriptor.required_settings if not config.get(name)]
