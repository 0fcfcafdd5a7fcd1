"""
Future Ticketing processor (customers, orders and stadium entries).

Messages arrive from the poller rather than webhooks, one record per message.
"""

from __future__ import annotations

from typing import Any, Mapping

from supporter_app.ingestion.pipeline.event_store import EventDraft
from supporter_app.ingestion.pipeline.identity import IdentitySignals
from supporter_app.ingestion.pipeline.idempotency import ft_entry_key, ft_order_key
from supporter_app.ingestion.pipeline.product_meanings import ProductMeaningResolver
from supporter_app.ingestion.utils import clean_str, join_name, parse_timestamp, to_decimal, utcnow
from supporter_app.models import DEFAULT_CURRENCY, Event, EventType, ProductMeaning, SourceSystem, Supporter, SupporterType

from .base import BaseProcessor, IngestMessage, IngestResult

SOURCE = SourceSystem.FUTURE_TICKETING.value


def _order_items(order: Mapping[str, Any]) -> list[dict[str, Any]]:
    return [dict(item) for item in order.get("Items") or () if isinstance(item, Mapping)]


def map_order(order: Mapping[str, Any]) -> EventDraft:
    """TicketPurchase draft; product meanings are attached once the event is known to be new."""

    return EventDraft(
        key=ft_order_key(order.get("OrderID")),
        event_type=EventType.TICKET_PURCHASE,
        event_time=parse_timestamp(order.get("OrderDate")) or utcnow(),
        amount=to_decimal(order.get("TotalAmount")),
        currency=DEFAULT_CURRENCY,
        metadata={
            "order_id": order.get("OrderID"),
            "customer_id": order.get("CustomerID"),
            "status": order.get("Status"),
            "items": _order_items(order),
        },
    )


def map_entry(entry: Mapping[str, Any]) -> EventDraft:
    return EventDraft(
        key=ft_entry_key(entry.get("EntryID")),
        event_type=EventType.STADIUM_ENTRY,
        event_time=parse_timestamp(entry.get("EntryTime")) or utcnow(),
        amount=None,
        currency=None,
        metadata={
            "entry_id": entry.get("EntryID"),
            "customer_id": entry.get("CustomerID"),
            "event_id": entry.get("EventID"),
            "event_name": entry.get("EventName"),
            "gate": entry.get("Gate"),
        },
    )


def customer_identity(customer: Mapping[str, Any]) -> IdentitySignals:
    return IdentitySignals.build(
        email=customer.get("Email"),
        phone=customer.get("Phone"),
        linked_system=SOURCE,
        linked_id=customer.get("CustomerID"),
        name=join_name(customer.get("FirstName"), customer.get("LastName")),
    )


def order_identity(order: Mapping[str, Any]) -> IdentitySignals:
    customer = order.get("Customer") if isinstance(order.get("Customer"), Mapping) else {}
    return IdentitySignals.build(
        email=customer.get("Email") or order.get("Email"),
        phone=customer.get("Phone"),
        linked_system=SOURCE,
        linked_id=order.get("CustomerID") or customer.get("CustomerID"),
        name=join_name(customer.get("FirstName"), customer.get("LastName")),
    )


def entry_identity(entry: Mapping[str, Any]) -> IdentitySignals:
    return IdentitySignals.build(linked_system=SOURCE, linked_id=entry.get("CustomerID"))


def type_from_meanings(current: SupporterType, meanings: list[str]) -> SupporterType:
    """Promotion applied straight after a ticket purchase; the classifier has the final say."""

    if ProductMeaning.SEASON_TICKET.value in meanings:
        return SupporterType.SEASON_TICKET_HOLDER
    if ProductMeaning.AWAY_SUPPORTER.value in meanings:
        return SupporterType.AWAY_SUPPORTER
    if ProductMeaning.HOME_TICKET.value in meanings and current == SupporterType.UNKNOWN:
        return SupporterType.TICKET_BUYER
    return current


class FutureTicketingProcessor(BaseProcessor):
    source_system = SOURCE

    def __init__(self, session=None, *, meanings: ProductMeaningResolver | None = None, **kwargs):
        super().__init__(session, **kwargs)
        self.meanings = meanings or ProductMeaningResolver(self.session)

    def handlers(self):
        return {
            "customer": self.handle_customer,
            "order": self.handle_order,
            "entry": self.handle_entry,
        }

    def handle_customer(self, message: IngestMessage) -> IngestResult:
        return self.upsert_identity(message, customer_identity(message.data))

    def handle_order(self, message: IngestMessage) -> IngestResult:
        draft = self.map_or_malformed(map_order, message.data)
        signals = order_identity(message.data)
        return self.record_event(
            message,
            draft,
            signals,
            create_if_missing=bool(signals.email),
            decorate=self.attach_meanings,
            after_insert=self._apply_meanings,
        )

    def handle_entry(self, message: IngestMessage) -> IngestResult:
        draft = self.map_or_malformed(map_entry, message.data)
        return self.record_event(message, draft, entry_identity(message.data), create_if_missing=False)

    def attach_meanings(self, draft: EventDraft) -> EventDraft:
        return draft.with_metadata(product_meanings=self.meanings.meanings_for_items(draft.metadata.get("items") or ()))

    def _apply_meanings(self, supporter: Supporter, event: Event) -> None:
        if supporter.is_admin_override:
            return
        new_type = type_from_meanings(supporter.supporter_type, event.product_meanings)
        if new_type != supporter.supporter_type:
            self.logger.info(
                "Promoted supporter from ticket purchase",
                extra={
                    "supporter_id": supporter.id,
                    "old_type": supporter.supporter_type.value,
                    "new_type": new_type.value,
                    "external_id": clean_str(event.external_id),
                },
            )
            supporter.supporter_type = new_type
