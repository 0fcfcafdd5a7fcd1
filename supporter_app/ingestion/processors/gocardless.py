"""
GoCardless webhook processor (payments, mandates, subscriptions and customers).

Webhook messages carry the GoCardless event (``action``, ``links``,
``created_at``) with the referenced ``payment``, ``subscription`` and
``customer`` resources embedded by the receiver, so processing never calls
the API.

Every action on a payment shares one idempotency key. The first action stores
the event; a later action that changes the outcome (``created`` then
``confirmed``) updates that event in place and applies the membership change.
"""

from __future__ import annotations

from typing import Any, Mapping

from supporter_app.ingestion.pipeline.event_store import EventDraft
from supporter_app.ingestion.pipeline.identity import IdentitySignals
from supporter_app.ingestion.pipeline.idempotency import gocardless_payment_key
from supporter_app.ingestion.pipeline.memberships import MembershipUpdater
from supporter_app.ingestion.utils import (
    join_name,
    minor_units_to_decimal,
    parse_date,
    parse_timestamp,
    upper_currency,
    utcnow,
)
from supporter_app.models import (
    BillingMethod,
    DEFAULT_CURRENCY,
    Event,
    EventType,
    MembershipCadence,
    MembershipStatus,
    SourceSystem,
    Supporter,
)

from .base import BaseProcessor, IngestMessage, IngestResult, SKIP_MISSING_IDENTITY

SOURCE = SourceSystem.GOCARDLESS.value

SUCCESS_ACTIONS = frozenset({"confirmed", "paid_out"})
FAILURE_ACTIONS = frozenset({"failed", "charged_back", "cancelled"})
MANDATE_SETUP_ACTIONS = frozenset({"created", "submitted"})

SUBSCRIPTION_CADENCES = {
    "monthly": MembershipCadence.MONTHLY,
    "yearly": MembershipCadence.ANNUAL,
}


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def payment_outcome(action: str | None) -> str:
    if action in SUCCESS_ACTIONS:
        return "success"
    if action in FAILURE_ACTIONS:
        return "failure"
    return "other"


def subscription_status(action: str | None, status: str | None) -> MembershipStatus:
    if action == "cancelled" or status == "cancelled":
        return MembershipStatus.CANCELLED
    if action == "paused" or status == "paused":
        return MembershipStatus.PAST_DUE
    return MembershipStatus.ACTIVE


def map_payment(
    payment: Mapping[str, Any],
    *,
    action: str | None = None,
    occurred_at: Any = None,
) -> EventDraft:
    """
    Payment draft. ``action`` comes from the webhook event; API listings fall
    back to the payment's own ``status``.
    """

    action = action or payment.get("status")
    links = _mapping(payment.get("links"))
    success = payment_outcome(action) == "success"
    return EventDraft(
        key=gocardless_payment_key(payment.get("id")),
        event_type=EventType.MEMBERSHIP_EVENT if success else EventType.PAYMENT_EVENT,
        event_time=parse_timestamp(occurred_at or payment.get("created_at") or payment.get("charge_date")) or utcnow(),
        amount=minor_units_to_decimal(payment.get("amount")),
        currency=upper_currency(payment.get("currency"), DEFAULT_CURRENCY),
        metadata={
            "payment_id": payment.get("id"),
            "status": payment.get("status"),
            "action": action,
            "mandate_id": links.get("mandate"),
            "subscription_id": links.get("subscription"),
            "description": payment.get("description"),
            "charge_date": payment.get("charge_date"),
        },
    )


def customer_identity(customer: Mapping[str, Any], *, customer_id: Any = None) -> IdentitySignals:
    return IdentitySignals.build(
        email=customer.get("email"),
        phone=customer.get("phone"),
        linked_system=SOURCE,
        linked_id=customer.get("id") or customer_id,
        name=join_name(customer.get("given_name"), customer.get("family_name")) or customer.get("company_name"),
    )


class GoCardlessProcessor(BaseProcessor):
    source_system = SOURCE

    def __init__(self, session=None, *, memberships: MembershipUpdater | None = None, **kwargs):
        super().__init__(session, **kwargs)
        self.memberships = memberships or MembershipUpdater(self.session)

    def handlers(self):
        return {
            "payments": self.handle_payment,
            "mandates": self.handle_mandate,
            "subscriptions": self.handle_subscription,
            "customers": self.handle_customer,
        }

    def handle_payment(self, message: IngestMessage) -> IngestResult:
        data = message.data
        links = _mapping(data.get("links"))
        payment = dict(_mapping(data.get("payment")))
        payment.setdefault("id", links.get("payment"))
        action = data.get("action")
        draft = self.map_or_malformed(map_payment, payment, action=action, occurred_at=data.get("created_at"))

        customer_id = links.get("customer") or _mapping(payment.get("links")).get("customer")
        signals = customer_identity(_mapping(data.get("customer")), customer_id=customer_id)
        if not signals.email and not signals.has_linked_id:
            return self.skip(message, SKIP_MISSING_IDENTITY, external_id=draft.external_id)

        outcome = payment_outcome(draft.metadata.get("action"))

        def apply_membership(supporter: Supporter, event: Event) -> None:
            if outcome == "success":
                metadata = event.metadata_json or {}
                self.memberships.mark_paid(
                    supporter,
                    billing_method=BillingMethod.GOCARDLESS,
                    paid_on=parse_date(metadata.get("charge_date")) or event.event_time.date(),
                )
            elif outcome == "failure":
                self.memberships.mark_past_due(supporter)

        existing = self.events.get(draft.key)
        if existing is not None and outcome != "other":
            previous = (existing.metadata_json or {}).get("action")
            if payment_outcome(previous) != outcome:
                return self._advance_payment(message, existing, draft, apply_membership)

        return self.record_event(
            message,
            draft,
            signals,
            create_if_missing=bool(signals.email),
            after_insert=apply_membership,
        )

    def _advance_payment(self, message, event: Event, draft: EventDraft, apply_membership) -> IngestResult:
        """A later lifecycle action for a stored payment updates it in place."""

        metadata = dict(event.metadata_json or {})
        metadata.update(
            action=draft.metadata.get("action"),
            status=draft.metadata.get("status"),
            charge_date=draft.metadata.get("charge_date") or metadata.get("charge_date"),
        )
        event.metadata_json = metadata
        event.event_type = draft.event_type
        supporter = self.session.get(Supporter, event.supporter_id)
        apply_membership(supporter, event)
        self.logger.info(
            "Payment status advanced",
            extra={
                "source_system": self.source_system,
                "external_id": event.external_id,
                "action": metadata["action"],
            },
        )
        return IngestResult(
            created=False,
            source_system=self.source_system,
            message_type=message.type,
            external_id=event.external_id,
            supporter_id=supporter.id,
            skipped_reason="status_updated",
        )

    def handle_mandate(self, message: IngestMessage) -> IngestResult:
        data = message.data
        links = _mapping(data.get("links"))
        action = data.get("action")
        signals = customer_identity(_mapping(data.get("customer")), customer_id=links.get("customer"))
        if action in MANDATE_SETUP_ACTIONS:
            resolution = self.resolver.resolve(signals, create_if_missing=bool(signals.email))
            skipped = self._skip_for_resolution(message, resolution, None)
            if skipped is not None:
                return skipped
            self.memberships.upsert(
                resolution.supporter, billing_method=BillingMethod.GOCARDLESS, status=MembershipStatus.ACTIVE
            )
            return self._membership_result(message, resolution.supporter, "membership_active")
        if action != "cancelled":
            self.logger.info(
                "Ignoring GoCardless mandate action %s",
                action,
                extra={"source_system": self.source_system, "mandate_id": links.get("mandate")},
            )
            return self.skip(message, "ignored_action")
        resolution = self.resolver.resolve(signals, create_if_missing=False)
        skipped = self._skip_for_resolution(message, resolution, None)
        if skipped is not None:
            return skipped
        self.memberships.mark_cancelled(resolution.supporter)
        return self._membership_result(message, resolution.supporter, "membership_cancelled")

    def handle_subscription(self, message: IngestMessage) -> IngestResult:
        data = message.data
        links = _mapping(data.get("links"))
        subscription = _mapping(data.get("subscription"))
        signals = customer_identity(_mapping(data.get("customer")), customer_id=links.get("customer"))
        if not signals.email and not signals.has_linked_id:
            return self.skip(message, SKIP_MISSING_IDENTITY)
        resolution = self.resolver.resolve(signals, create_if_missing=bool(signals.email))
        skipped = self._skip_for_resolution(message, resolution, None)
        if skipped is not None:
            return skipped
        self.memberships.upsert(
            resolution.supporter,
            billing_method=BillingMethod.GOCARDLESS,
            status=subscription_status(data.get("action"), subscription.get("status")),
            cadence=SUBSCRIPTION_CADENCES.get(subscription.get("interval_unit")),
        )
        return self._membership_result(message, resolution.supporter, "membership_updated")

    def handle_customer(self, message: IngestMessage) -> IngestResult:
        data = message.data
        customer = _mapping(data.get("customer")) or data
        links = _mapping(data.get("links"))
        return self.upsert_identity(message, customer_identity(customer, customer_id=links.get("customer")))

    def _membership_result(self, message: IngestMessage, supporter: Supporter, reason: str) -> IngestResult:
        return IngestResult(
            created=False,
            source_system=self.source_system,
            message_type=message.type,
            supporter_id=supporter.id,
            skipped_reason=reason,
        )
