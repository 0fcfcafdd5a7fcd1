"""
Source API client tests against a fake ``requests`` session.
"""

from datetime import datetime, timezone

import pytest
import requests

from supporter_app.ingestion.adapters import SourceClients, build_clients
from supporter_app.ingestion.adapters.futureticketing import FutureTicketingClient
from supporter_app.ingestion.adapters.http import HTTPSettings, SourceHTTPClient
from supporter_app.ingestion.adapters.mailchimp import MailchimpClient, data_center_from_key, subscriber_hash
from supporter_app.ingestion.adapters.stripe import StripeClient
from supporter_app.ingestion.errors import PageLimitReached, SourceAPIError, TransientSourceError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"" if payload is None and not text else b"x"

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


def _client(session):
    client = SourceHTTPClient("https://api.example.com/", session=session, settings=HTTPSettings(timeout_seconds=5))
    client.source_system = "shopify"
    return client


def test_success_returns_json_and_passes_timeout():
    session = FakeSession(FakeResponse(payload={"ok": True}))

    assert _client(session).get("orders", params={"limit": 1}) == {"ok": True}
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://api.example.com/orders")
    assert kwargs["timeout"] == 5
    assert kwargs["params"] == {"limit": 1}


@pytest.mark.parametrize("status", [429, 500, 503])
def test_throttling_and_server_errors_are_transient(status):
    with pytest.raises(TransientSourceError) as excinfo:
        _client(FakeSession(FakeResponse(status_code=status))).get("orders")
    assert excinfo.value.status_code == status


def test_client_errors_are_permanent():
    with pytest.raises(SourceAPIError) as excinfo:
        _client(FakeSession(FakeResponse(status_code=404, text="not found"))).get("orders/1")
    assert not isinstance(excinfo.value, TransientSourceError)
    assert "not found" in str(excinfo.value)


def test_timeouts_are_transient():
    with pytest.raises(TransientSourceError):
        _client(FakeSession(error=requests.Timeout("read timed out"))).get("orders")


def test_no_content_returns_none():
    assert _client(FakeSession(FakeResponse(status_code=204))).post("tags", json={}) is None


def test_invalid_json_is_an_api_error():
    with pytest.raises(SourceAPIError, match="invalid JSON"):
        _client(FakeSession(FakeResponse(text="<html>"))).get("orders")


def test_mailchimp_helpers():
    assert data_center_from_key("abc123-us21") == "us21"
    with pytest.raises(ValueError):
        data_center_from_key("nodatacenter")
    assert subscriber_hash(" Fan@Example.com ") == subscriber_hash("fan@example.com")


def test_mailchimp_tag_update_payload():
    session = FakeSession(FakeResponse(status_code=204))
    client = MailchimpClient("key-us5", session=session)

    client.update_member_tags("aud1", "fan@example.com", add={"Member"}, remove={"ShopBuyer:Last90Days"})

    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url == f"https://us5.api.mailchimp.com/3.0/lists/aud1/members/{subscriber_hash('fan@example.com')}/tags"
    assert kwargs["json"] == {
        "tags": [{"name": "Member", "status": "active"}, {"name": "ShopBuyer:Last90Days", "status": "inactive"}]
    }


def test_stripe_charges_follow_pagination():
    session = FakeSession(
        FakeResponse(payload={"data": [{"id": "ch_1"}], "has_more": True}),
        FakeResponse(payload={"data": [{"id": "ch_2"}], "has_more": False}),
    )
    client = StripeClient("sk_test", session=session)

    charges = list(client.iter_charges_since(datetime(2026, 3, 1, tzinfo=timezone.utc)))

    assert [charge["id"] for charge in charges] == ["ch_1", "ch_2"]
    assert session.calls[1][2]["params"]["starting_after"] == "ch_1"


def test_futureticketing_page_cap_raises_after_yielding_fetched_records():
    session = FakeSession(
        FakeResponse(payload={"data": [{"OrderID": "O-1"}], "pagination": {"hasMore": True}}),
        FakeResponse(payload={"data": [{"OrderID": "O-2"}], "pagination": {"hasMore": True}}),
    )
    client = FutureTicketingClient("https://ft.example.com/api", "key", max_pages=2, session=session)
    seen = []

    with pytest.raises(PageLimitReached):
        for order in client.iter_orders(datetime(2026, 3, 1, tzinfo=timezone.utc)):
            seen.append(order["OrderID"])

    assert seen == ["O-1", "O-2"]
    assert [call[2]["params"]["page"] for call in session.calls] == [1, 2]
    assert session.calls[0][2]["params"]["sinceDate"] == "2026-03-01T00:00:00+00:00"


def test_futureticketing_last_page_within_cap_is_clean():
    session = FakeSession(FakeResponse(payload={"data": [{"EntryID": "E-1"}], "pagination": {"hasMore": False}}))
    client = FutureTicketingClient("https://ft.example.com/api", "key", max_pages=1, session=session)

    assert list(client.iter_entries()) == [{"EntryID": "E-1"}]


def test_build_clients_only_for_configured_sources():
    clients = build_clients({"STRIPE_API_KEY": "sk_test", "MAILCHIMP_API_KEY": "k-us1"})

    assert isinstance(clients, SourceClients)
    assert clients.stripe is not None
    assert clients.mailchimp is not None
    assert clients.shopify is None
    assert clients.futureticketing is None
    assert clients.gocardless is None


def test_build_clients_passes_futureticketing_page_cap():
    clients = build_clients(
        {
            "FUTURE_TICKETING_API_URL": "https://ft.example.com/api",
            "FUTURE_TICKETING_API_KEY": "key",
            "FUTURE_TICKETING_MAX_PAGES": 7,
        }
    )

    assert clients.futureticketing.max_pages == 7
