from sqlalchemy import func, select

from supporter_app.ingestion.errors import PageLimitReached
from supporter_app.ingestion.pipeline.ft_poller import poll_futureticketing
from supporter_app.ingestion.pipeline.settings import ConfigStore, FTPollCheckpoint
from supporter_app.models import Event, db


class FakeFutureTicketingClient:
    def __init__(self, *, customers=(), orders=(), entries=(), failing=()):
        self.records = {"customers": list(customers), "orders": list(orders), "entries": list(entries)}
        self.failing = set(failing)
        self.since = {}

    def _iterate(self, kind, since):
        self.since[kind] = since
        if kind in self.failing:
            raise RuntimeError(f"{kind} endpoint unavailable")
        yield from self.records[kind]

    def iter_customers(self, since):
        return self._iterate("customers", since)

    def iter_orders(self, since):
        return self._iterate("orders", since)

    def iter_entries(self, since):
        return self._iterate("entries", since)


ORDER = {
    "OrderID": "O-5",
    "CustomerID": "FT-5",
    "OrderDate": "2026-03-14T19:00:00Z",
    "TotalAmount": "20.00",
    "Customer": {"CustomerID": "FT-5", "Email": "poll@example.com"},
    "Items": [],
}


def test_poll_ingests_and_advances_checkpoints(app, fixed_now):
    client = FakeFutureTicketingClient(orders=[ORDER])

    summary = poll_futureticketing(client, now_fn=lambda: fixed_now)

    order_result = summary.results[1]
    assert order_result.kind == "order"
    assert order_result.created == 1
    assert db.session.scalar(select(func.count()).select_from(Event)) == 1
    checkpoint = FTPollCheckpoint.load(ConfigStore())
    assert checkpoint.last_order_fetch == fixed_now
    assert checkpoint.last_customer_fetch == fixed_now
    assert client.since == {"customers": None, "orders": None, "entries": None}


def test_failed_kind_keeps_previous_checkpoint(app, fixed_now):
    client = FakeFutureTicketingClient(orders=[ORDER], failing={"entries"})

    summary = poll_futureticketing(client, now_fn=lambda: fixed_now)

    entry_result = summary.results[2]
    assert "unavailable" in entry_result.error
    checkpoint = FTPollCheckpoint.load(ConfigStore())
    assert checkpoint.last_entry_fetch is None
    assert checkpoint.last_order_fetch == fixed_now
    assert summary.checkpoint["last_entry_fetch"] is None


def test_second_poll_reads_from_checkpoint(app, fixed_now):
    client = FakeFutureTicketingClient(orders=[ORDER])
    poll_futureticketing(client, now_fn=lambda: fixed_now)

    summary = poll_futureticketing(client, now_fn=lambda: fixed_now)

    assert client.since["orders"] == fixed_now
    assert summary.results[1].skipped == 1
    assert db.session.scalar(select(func.count()).select_from(Event)) == 1


def test_malformed_record_is_skipped_without_holding_checkpoint(app, fixed_now):
    broken = {key: value for key, value in ORDER.items() if key != "OrderID"}
    client = FakeFutureTicketingClient(orders=[broken, ORDER])

    summary = poll_futureticketing(client, now_fn=lambda: fixed_now)

    order_result = summary.results[1]
    assert order_result.error is None
    assert order_result.malformed == 1
    assert order_result.created == 1
    assert "order id" in order_result.record_errors[0]
    assert FTPollCheckpoint.load(ConfigStore()).last_order_fetch == fixed_now
    assert db.session.scalar(select(func.count()).select_from(Event)) == 1

    later = poll_futureticketing(client, now_fn=lambda: fixed_now)

    assert later.results[1].skipped == 1
    assert later.results[1].malformed == 1


class CappedOrdersClient(FakeFutureTicketingClient):
    def iter_orders(self, since):
        self.since["orders"] = since
        yield from self.records["orders"]
        raise PageLimitReached("futureticketing", "orders still has more records after 1 pages")


def test_page_cap_keeps_checkpoint_but_ingests_fetched_records(app, fixed_now):
    client = CappedOrdersClient(orders=[ORDER])

    summary = poll_futureticketing(client, now_fn=lambda: fixed_now)

    order_result = summary.results[1]
    assert order_result.created == 1
    assert "after 1 pages" in order_result.error
    checkpoint = FTPollCheckpoint.load(ConfigStore())
    assert checkpoint.last_order_fetch is None
    assert checkpoint.last_entry_fetch == fixed_now
    assert db.session.scalar(select(func.count()).select_from(Event)) == 1
