"""
Stripe webhook processor (payments, invoices and customers).
"""

from __future__ import annotations

from typing import Any, Mapping

from supporter_app.ingestion.pipeline.event_store import EventDraft
from supporter_app.ingestion.pipeline.identity import IdentitySignals
from supporter_app.ingestion.pipeline.idempotency import stripe_charge_key, stripe_invoice_key, stripe_payment_intent_key
from supporter_app.ingestion.pipeline.memberships import MembershipUpdater, parse_cadence, parse_tier
from supporter_app.ingestion.utils import minor_units_to_decimal, parse_timestamp, upper_currency, utcnow
from supporter_app.models import BillingMethod, DEFAULT_CURRENCY, Event, EventType, SourceSystem, Supporter

from .base import BaseProcessor, IngestMessage, IngestResult, SKIP_MISSING_IDENTITY

SOURCE = SourceSystem.STRIPE.value


def stripe_object(data: Mapping[str, Any]) -> Mapping[str, Any]:
    """Accept either the bare Stripe object or a full event envelope."""

    envelope = data.get("data")
    if isinstance(envelope, Mapping) and isinstance(envelope.get("object"), Mapping):
        return envelope["object"]
    return data


def _created(obj: Mapping[str, Any]):
    return parse_timestamp(obj.get("created")) or utcnow()


def _payment_metadata(obj: Mapping[str, Any], id_field: str) -> dict[str, Any]:
    return {
        id_field: obj.get("id"),
        "status": obj.get("status"),
        "payment_method": obj.get("payment_method"),
        "description": obj.get("description"),
        "metadata": dict(obj.get("metadata") or {}),
        "customer": obj.get("customer"),
    }


def map_payment_intent(obj: Mapping[str, Any]) -> EventDraft:
    return EventDraft(
        key=stripe_payment_intent_key(obj.get("id")),
        event_type=EventType.PAYMENT_EVENT,
        event_time=_created(obj),
        amount=minor_units_to_decimal(obj.get("amount")),
        currency=upper_currency(obj.get("currency"), DEFAULT_CURRENCY),
        metadata=_payment_metadata(obj, "payment_intent_id"),
    )


def map_charge(obj: Mapping[str, Any]) -> EventDraft:
    return EventDraft(
        key=stripe_charge_key(obj.get("id")),
        event_type=EventType.PAYMENT_EVENT,
        event_time=_created(obj),
        amount=minor_units_to_decimal(obj.get("amount")),
        currency=upper_currency(obj.get("currency"), DEFAULT_CURRENCY),
        metadata=_payment_metadata(obj, "charge_id"),
    )


def map_invoice(obj: Mapping[str, Any], *, failed: bool = False) -> EventDraft:
    amount_field = "amount_due" if failed else "amount_paid"
    metadata = {
        "invoice_id": obj.get("id"),
        "subscription_id": obj.get("subscription"),
        "status": "payment_failed" if failed else obj.get("status"),
        "period_start": obj.get("period_start"),
        "period_end": obj.get("period_end"),
    }
    if failed:
        metadata.update({"due_date": obj.get("due_date"), "hosted_invoice_url": obj.get("hosted_invoice_url")})
    else:
        metadata["total"] = obj.get("total")
    return EventDraft(
        key=stripe_invoice_key(obj.get("id"), failed=failed),
        event_type=EventType.MEMBERSHIP_EVENT,
        event_time=_created(obj),
        amount=minor_units_to_decimal(obj.get(amount_field)),
        currency=upper_currency(obj.get("currency"), DEFAULT_CURRENCY),
        metadata=metadata,
    )


def payment_identity(obj: Mapping[str, Any]) -> IdentitySignals:
    details = obj.get("customer_details") or obj.get("billing_details") or {}
    if not isinstance(details, Mapping):
        details = {}
    return IdentitySignals.build(
        email=obj.get("receipt_email") or details.get("email"),
        phone=details.get("phone"),
        linked_system=SOURCE,
        linked_id=obj.get("customer"),
        name=details.get("name"),
    )


def customer_identity(obj: Mapping[str, Any]) -> IdentitySignals:
    return IdentitySignals.build(
        email=obj.get("email"),
        phone=obj.get("phone"),
        linked_system=SOURCE,
        linked_id=obj.get("id"),
        name=obj.get("name"),
    )


class StripeProcessor(BaseProcessor):
    source_system = SOURCE

    def __init__(self, session=None, *, memberships: MembershipUpdater | None = None, **kwargs):
        super().__init__(session, **kwargs)
        self.memberships = memberships or MembershipUpdater(self.session)

    def handlers(self):
        return {
            "payment_intent.succeeded": self.handle_payment_intent,
            "charge.succeeded": self.handle_charge,
            "invoice.payment_succeeded": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_failed,
            "customer.created": self.handle_customer,
            "customer.updated": self.handle_customer,
        }

    def handle_payment_intent(self, message: IngestMessage) -> IngestResult:
        obj = stripe_object(message.data)
        return self._record_payment(message, self.map_or_malformed(map_payment_intent, obj), obj)

    def handle_charge(self, message: IngestMessage) -> IngestResult:
        obj = stripe_object(message.data)
        return self._record_payment(message, self.map_or_malformed(map_charge, obj), obj)

    def handle_invoice_paid(self, message: IngestMessage) -> IngestResult:
        obj = stripe_object(message.data)
        draft = self.map_or_malformed(map_invoice, obj)

        def mark_paid(supporter: Supporter, event: Event) -> None:
            self.memberships.mark_paid(
                supporter,
                billing_method=BillingMethod.STRIPE,
                paid_on=event.event_time.date(),
            )

        return self._record_invoice(message, draft, obj, mark_paid)

    def handle_invoice_failed(self, message: IngestMessage) -> IngestResult:
        obj = stripe_object(message.data)
        draft = self.map_or_malformed(map_invoice, obj, failed=True)
        return self._record_invoice(
            message,
            draft,
            obj,
            lambda supporter, event: self.memberships.mark_past_due(supporter),
        )

    def handle_customer(self, message: IngestMessage) -> IngestResult:
        return self.upsert_identity(message, customer_identity(stripe_object(message.data)))

    def _record_payment(self, message: IngestMessage, draft: EventDraft, obj: Mapping[str, Any]) -> IngestResult:
        signals = payment_identity(obj)
        if not signals.email and not signals.has_linked_id:
            self.logger.warning(
                "Stripe payment without email or customer; skipping",
                extra={"source_system": self.source_system, "external_id": draft.external_id},
            )
            return self.skip(message, SKIP_MISSING_IDENTITY, external_id=draft.external_id)

        def apply_membership(supporter: Supporter, event: Event) -> None:
            metadata = obj.get("metadata") or {}
            tier = parse_tier(metadata.get("membership_tier"))
            cadence = parse_cadence(metadata.get("membership_cadence"))
            if tier is None or cadence is None:
                return
            self.memberships.mark_paid(
                supporter,
                billing_method=BillingMethod.STRIPE,
                paid_on=event.event_time.date(),
                tier=tier,
                cadence=cadence,
            )

        return self.record_event(message, draft, signals, create_if_missing=True, after_insert=apply_membership)

    def _record_invoice(self, message: IngestMessage, draft: EventDraft, obj: Mapping[str, Any], after_insert) -> IngestResult:
        signals = IdentitySignals.build(linked_system=SOURCE, linked_id=obj.get("customer"))
        if not signals.has_linked_id:
            self.logger.warning(
                "Stripe invoice without customer; skipping",
                extra={"source_system": self.source_system, "external_id": draft.external_id},
            )
            return self.skip(message, SKIP_MISSING_IDENTITY, external_id=draft.external_id)
        return self.record_event(message, draft, signals, create_if_missing=False, after_insert=after_insert)
