"""
Shopify webhook processor (orders and customers).
"""

from __future__ import annotations

from typing import Any, Mapping

from supporter_app.ingestion.pipeline.event_store import EventDraft
from supporter_app.ingestion.pipeline.identity import IdentitySignals
from supporter_app.ingestion.pipeline.idempotency import shopify_order_key
from supporter_app.ingestion.utils import join_name, parse_timestamp, to_decimal, upper_currency, utcnow
from supporter_app.models import DEFAULT_CURRENCY, Event, EventType, SourceSystem, Supporter, SupporterType

from .base import BaseProcessor, IngestMessage, IngestResult, SKIP_MISSING_IDENTITY

ORDER_TOPICS = ("orders/create", "orders/paid", "orders/fulfilled")
CUSTOMER_TOPICS = ("customers/create", "customers/update")


def _line_items(order: Mapping[str, Any]) -> list[dict[str, Any]]:
    items = []
    for item in order.get("line_items") or ():
        if not isinstance(item, Mapping):
            continue
        items.append(
            {
                "id": item.get("id"),
                "product_id": item.get("product_id"),
                "title": item.get("title"),
                "quantity": item.get("quantity"),
                "price": item.get("price"),
            }
        )
    return items


def map_order(order: Mapping[str, Any], *, topic: str = "orders/create") -> EventDraft:
    """Map a Shopify order payload to a ShopOrder draft."""

    return EventDraft(
        key=shopify_order_key(order.get("id")),
        event_type=EventType.SHOP_ORDER,
        event_time=parse_timestamp(order.get("created_at") or order.get("processed_at"), default=None) or utcnow(),
        amount=to_decimal(order.get("total_price")),
        currency=upper_currency(order.get("currency"), DEFAULT_CURRENCY),
        metadata={
            "order_id": order.get("id"),
            "order_number": order.get("order_number"),
            "items": _line_items(order),
            "fulfillment_status": order.get("fulfillment_status"),
            "financial_status": order.get("financial_status"),
            "topic": topic,
        },
    )


def order_identity(order: Mapping[str, Any]) -> IdentitySignals:
    customer = order.get("customer") if isinstance(order.get("customer"), Mapping) else {}
    return IdentitySignals.build(
        email=order.get("email") or customer.get("email"),
        phone=customer.get("phone") or order.get("phone"),
        linked_system=SourceSystem.SHOPIFY.value,
        linked_id=customer.get("id"),
        name=join_name(customer.get("first_name"), customer.get("last_name")),
    )


def customer_identity(customer: Mapping[str, Any]) -> IdentitySignals:
    return IdentitySignals.build(
        email=customer.get("email"),
        phone=customer.get("phone"),
        linked_system=SourceSystem.SHOPIFY.value,
        linked_id=customer.get("id"),
        name=join_name(customer.get("first_name"), customer.get("last_name")),
    )


class ShopifyProcessor(BaseProcessor):
    source_system = SourceSystem.SHOPIFY.value

    def handlers(self):
        routes = {topic: self.handle_order for topic in ORDER_TOPICS}
        routes.update({topic: self.handle_customer for topic in CUSTOMER_TOPICS})
        return routes

    def handle_order(self, message: IngestMessage) -> IngestResult:
        draft = self.map_or_malformed(map_order, message.data, topic=message.type)
        signals = order_identity(message.data)
        if not signals.email:
            self.logger.warning(
                "Shopify order without email; skipping",
                extra={"source_system": self.source_system, "external_id": draft.external_id},
            )
            return self.skip(message, SKIP_MISSING_IDENTITY, external_id=draft.external_id)
        return self.record_event(
            message,
            draft,
            signals,
            create_if_missing=True,
            after_insert=self._apply_shop_buyer,
        )

    def handle_customer(self, message: IngestMessage) -> IngestResult:
        return self.upsert_identity(message, customer_identity(message.data))

    def _apply_shop_buyer(self, supporter: Supporter, event: Event) -> None:
        if supporter.is_admin_override:
            return
        if supporter.supporter_type == SupporterType.UNKNOWN:
            supporter.supporter_type = SupporterType.SHOP_BUYER
