"""
Reconciliation job tests using in-memory fake source clients.
"""

from datetime import timedelta

from sqlalchemy import func, select

from supporter_app.ingestion.adapters import SourceClients
from supporter_app.ingestion.pipeline.reconciler import (
    ALERT_THRESHOLD,
    FutureTicketingReconciler,
    GoCardlessPaymentReconciler,
    ReconciliationJob,
    ShopifyOrderReconciler,
    StripeChargeReconciler,
    build_reconcilers,
)
from supporter_app.ingestion.pipeline.product_meanings import ProductMeaningResolver
from supporter_app.ingestion.processors.shopify import ShopifyProcessor
from supporter_app.models import Event, db


class FakeShopifyClient:
    def __init__(self, orders):
        self.orders = orders
        self.calls = []

    def iter_orders_since(self, since):
        self.calls.append(since)
        yield from self.orders


class FakeStripeClient:
    def __init__(self, charges=None, error=None):
        self.charges = charges or []
        self.error = error

    def iter_charges_since(self, since):
        if self.error:
            raise self.error
        yield from self.charges


class FakeFutureTicketingClient:
    def __init__(self, orders=(), entries=()):
        self.orders = list(orders)
        self.entries = list(entries)

    def iter_orders(self, since):
        yield from self.orders

    def iter_entries(self, since):
        yield from self.entries


class FakeGoCardlessClient:
    def __init__(self, payments):
        self.payments = payments

    def iter_payments_since(self, since):
        yield from self.payments


def _order(order_id, customer_id="C-1"):
    return {
        "id": order_id,
        "email": "fan@example.com",
        "created_at": "2026-03-14T10:00:00Z",
        "total_price": "10.00",
        "customer": {"id": customer_id},
    }


def _event_count():
    return db.session.scalar(select(func.count()).select_from(Event))


def test_recovers_missing_events_once(supporter_factory, fixed_now):
    supporter_factory(linked_ids={"shopify": "C-1"})
    client = FakeShopifyClient([_order(1), _order(2)])
    job = ReconciliationJob([ShopifyOrderReconciler(client)], now_fn=lambda: fixed_now)

    first = job.run()
    second = job.run()

    assert first.total_recovered == 2
    assert second.total_recovered == 0
    assert second.results[0].events_already_exists == 2
    assert _event_count() == 2
    assert client.calls[0] == fixed_now - timedelta(hours=24)


def test_live_and_reconciled_copies_collapse(supporter_factory, fixed_now):
    supporter_factory(email="fan@example.com", linked_ids={"shopify": "C-1"})
    ShopifyProcessor().ingest({"type": "orders/create", "data": _order(1)})

    run = ReconciliationJob(
        [ShopifyOrderReconciler(FakeShopifyClient([_order(1)]))], now_fn=lambda: fixed_now
    ).run()

    assert run.total_recovered == 0
    assert _event_count() == 1


def test_unlinked_customer_is_reported_not_created(app, fixed_now):
    run = ReconciliationJob(
        [ShopifyOrderReconciler(FakeShopifyClient([_order(1, customer_id="C-404")]))], now_fn=lambda: fixed_now
    ).run()

    result = run.results[0]
    assert result.events_recovered == 0
    assert "C-404" in result.errors[0]
    assert _event_count() == 0


def test_failing_source_does_not_stop_others(supporter_factory, fixed_now):
    supporter_factory(linked_ids={"shopify": "C-1"})
    job = ReconciliationJob(
        [
            StripeChargeReconciler(FakeStripeClient(error=RuntimeError("stripe down"))),
            ShopifyOrderReconciler(FakeShopifyClient([_order(1)])),
        ],
        now_fn=lambda: fixed_now,
    )

    run = job.run()

    stripe_result, shopify_result = run.results
    assert stripe_result.errors and "stripe down" in stripe_result.errors[0]
    assert shopify_result.events_recovered == 1


def test_lookback_override_and_last_run_stamp(app, fixed_now):
    client = FakeShopifyClient([])
    run = ReconciliationJob([ShopifyOrderReconciler(client)], now_fn=lambda: fixed_now).run(lookback_hours=6)

    assert client.calls == [fixed_now - timedelta(hours=6)]
    assert run.lookback_hours == 6
    assert run.last_run == fixed_now.isoformat()


def test_alert_when_recovery_exceeds_threshold(supporter_factory, fixed_now):
    supporter_factory(linked_ids={"stripe": "cus_1"})
    charges = [
        {"id": f"ch_{index}", "status": "succeeded", "amount": 100, "customer": "cus_1", "created": 1773500000}
        for index in range(ALERT_THRESHOLD + 1)
    ]
    charges.append({"id": "ch_failed", "status": "failed", "amount": 100, "customer": "cus_1"})

    run = ReconciliationJob([StripeChargeReconciler(FakeStripeClient(charges))], now_fn=lambda: fixed_now).run()

    assert run.total_recovered == ALERT_THRESHOLD + 1
    assert run.status == "alert"
    assert run.to_dict()["status"] == "alert"


def test_gocardless_payments_are_recovered(supporter_factory, fixed_now):
    supporter_factory(linked_ids={"gocardless": "CU1"})
    payments = [{"id": "PM1", "status": "paid_out", "amount": 500, "links": {"customer": "CU1"}}]

    run = ReconciliationJob([GoCardlessPaymentReconciler(FakeGoCardlessClient(payments))], now_fn=lambda: fixed_now).run()

    assert run.total_recovered == 1
    assert db.session.scalar(select(Event.external_id)) == "gocardless-payment-PM1"


def test_build_reconcilers_skips_unconfigured_sources(app):
    reconcilers = build_reconcilers(SourceClients(shopify=FakeShopifyClient([])))
    assert [type(reconciler) for reconciler in reconcilers] == [ShopifyOrderReconciler]


def test_unmappable_record_does_not_abort_source(supporter_factory, fixed_now):
    supporter_factory(linked_ids={"shopify": "C-1"})
    broken = _order(None)

    run = ReconciliationJob(
        [ShopifyOrderReconciler(FakeShopifyClient([broken, _order(2)]))], now_fn=lambda: fixed_now
    ).run()

    result = run.results[0]
    assert result.events_found == 2
    assert result.events_recovered == 1
    assert len(result.errors) == 1 and "record skipped" in result.errors[0]
    assert db.session.scalar(select(Event.external_id)) == "shopify-order-2"


def test_futureticketing_bad_order_does_not_hide_entries(supporter_factory, fixed_now):
    supporter_factory(linked_ids={"futureticketing": "FT-9"})
    client = FakeFutureTicketingClient(
        orders=[{"CustomerID": "FT-9", "OrderDate": "2026-03-14T19:00:00Z"}],
        entries=[{"EntryID": "E-1", "CustomerID": "FT-9", "EntryTime": "2026-03-14T19:30:00Z"}],
    )

    run = ReconciliationJob(
        [FutureTicketingReconciler(client, ProductMeaningResolver())], now_fn=lambda: fixed_now
    ).run()

    result = run.results[0]
    assert result.events_recovered == 1
    assert "order id" in result.errors[0]
    assert db.session.scalar(select(Event.external_id)) == "futureticketing-entry-E-1"
