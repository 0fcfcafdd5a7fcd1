"""
Idempotency key builders.

Live processors and the reconciliation job both build ``external_id`` values
through these helpers, so one logical upstream event always maps to one key.
"""

from __future__ import annotations

from dataclasses import dataclass

from supporter_app.models import SourceSystem


@dataclass(frozen=True)
class IdempotencyKey:
    source_system: str
    external_id: str

    def __str__(self) -> str:
        return f"{self.source_system}:{self.external_id}"


def _require(value: object, label: str) -> str:
    token = str(value).strip() if value is not None else ""
    if not token:
        raise ValueError(f"Cannot build idempotency key without {label}")
    return token


def shopify_order_key(order_id: object) -> IdempotencyKey:
    return IdempotencyKey(SourceSystem.SHOPIFY.value, f"shopify-order-{_require(order_id, 'order id')}")


def ft_order_key(order_id: object) -> IdempotencyKey:
    return IdempotencyKey(
        SourceSystem.FUTURE_TICKETING.value,
        f"futureticketing-order-{_require(order_id, 'order id')}",
    )


def ft_entry_key(entry_id: object) -> IdempotencyKey:
    return IdempotencyKey(
        SourceSystem.FUTURE_TICKETING.value,
        f"futureticketing-entry-{_require(entry_id, 'entry id')}",
    )


def mailchimp_click_key(campaign_id: object | None, email: str, timestamp: str) -> IdempotencyKey:
    campaign = str(campaign_id).strip() if campaign_id not in (None, "") else "unknown"
    return IdempotencyKey(
        SourceSystem.MAILCHIMP.value,
        f"mailchimp-click-{campaign}-{_require(email, 'email')}-{_require(timestamp, 'timestamp')}",
    )


def stripe_payment_intent_key(intent_id: object) -> IdempotencyKey:
    return IdempotencyKey(SourceSystem.STRIPE.value, f"stripe-pi-{_require(intent_id, 'payment intent id')}")


def stripe_charge_key(charge_id: object) -> IdempotencyKey:
    return IdempotencyKey(SourceSystem.STRIPE.value, f"stripe-charge-{_require(charge_id, 'charge id')}")


def stripe_invoice_key(invoice_id: object, *, failed: bool = False) -> IdempotencyKey:
    prefix = "stripe-invoice-failed" if failed else "stripe-invoice"
    return IdempotencyKey(SourceSystem.STRIPE.value, f"{prefix}-{_require(invoice_id, 'invoice id')}")


def gocardless_payment_key(payment_id: object) -> IdempotencyKey:
    return IdempotencyKey(
        SourceSystem.GOCARDLESS.value,
        f"gocardless-payment-{_require(payment_id, 'payment id')}",
    )
