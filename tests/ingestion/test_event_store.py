from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from supporter_app.ingestion.pipeline import idempotency
from supporter_app.ingestion.pipeline.event_store import EventDraft, EventStore
from supporter_app.models import EventType, db


def _draft(external_id="order-1"):
    return EventDraft(
        key=idempotency.shopify_order_key(external_id),
        event_type=EventType.SHOP_ORDER,
        event_time=datetime(2026, 1, 2, tzinfo=timezone.utc),
        metadata={"order_id": external_id},
    )


def test_key_builders_produce_stable_ids():
    assert idempotency.shopify_order_key(1001).external_id == "shopify-order-1001"
    assert idempotency.ft_order_key("55").external_id == "futureticketing-order-55"
    assert idempotency.ft_entry_key(9).external_id == "futureticketing-entry-9"
    assert idempotency.stripe_payment_intent_key("pi_1").external_id == "stripe-pi-pi_1"
    assert idempotency.stripe_invoice_key("in_1", failed=True).external_id == "stripe-invoice-failed-in_1"
    assert idempotency.gocardless_payment_key("PM1").external_id == "gocardless-payment-PM1"
    assert (
        idempotency.mailchimp_click_key(None, "a@example.com", "2026-01-01T00:00:00").external_id
        == "mailchimp-click-unknown-a@example.com-2026-01-01T00:00:00"
    )


@pytest.mark.parametrize("blank", [None, "", "   "])
def test_key_builders_reject_missing_ids(blank):
    with pytest.raises(ValueError):
        idempotency.shopify_order_key(blank)


def test_insert_then_exists(supporter_factory):
    supporter = supporter_factory()
    store = EventStore()
    draft = _draft()

    assert not store.exists(draft.key)
    store.insert(supporter, draft)
    db.session.commit()

    assert store.exists(draft.key)
    event = store.get(draft.key)
    assert event.supporter_id == supporter.id
    assert event.metadata_json == {"order_id": "order-1"}
    assert event.currency == "EUR"


def test_duplicate_key_is_rejected_by_database(supporter_factory):
    supporter = supporter_factory()
    store = EventStore()
    store.insert(supporter, _draft())
    db.session.commit()

    with pytest.raises(IntegrityError):
        store.insert(supporter, _draft())
    db.session.rollback()

    assert len(store.for_supporter(supporter.id)) == 1


def test_for_supporter_filters_by_type_and_time(supporter_factory, event_factory):
    supporter = supporter_factory()
    event_factory(supporter, EventType.SHOP_ORDER, event_time=datetime(2025, 1, 1, tzinfo=timezone.utc))
    event_factory(supporter, EventType.TICKET_PURCHASE, event_time=datetime(2026, 1, 1, tzinfo=timezone.utc))

    store = EventStore()
    recent = store.for_supporter(supporter.id, since=datetime(2025, 6, 1, tzinfo=timezone.utc))
    shop = store.for_supporter(supporter.id, event_types=[EventType.SHOP_ORDER])

    assert [event.event_type for event in recent] == [EventType.TICKET_PURCHASE]
    assert [event.event_type for event in shop] == [EventType.SHOP_ORDER]
