from supporter_app.models import FLAG_SHARED_EMAIL, AuditLog, Supporter, db


def test_health_reports_sources(client):
    response = client.get("/ingestion/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["enabled"] is True
    sources = {source["name"]: source for source in payload["sources"]}
    assert set(sources) == {"shopify", "futureticketing", "stripe", "gocardless", "mailchimp"}
    assert sources["futureticketing"]["delivery"] == "poll"
    assert sources["stripe"]["configured"] is False
    assert sources["stripe"]["missing_settings"] == ["STRIPE_API_KEY"]


def test_merge_endpoint_success(client, supporter_factory):
    source = supporter_factory(linked_ids={"stripe": "cus_1"})
    target = supporter_factory()

    response = client.post(
        f"/ingestion/supporters/{source.id}/merge",
        json={"target_id": target.id, "reason": "Same person", "actor": "ops@club"},
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["merged"] == source.id
    assert payload["target"]["id"] == target.id
    assert payload["target"]["linked_ids"] == {"stripe": "cus_1"}
    assert db.session.get(Supporter, source.id) is None
    assert db.session.query(AuditLog).one().actor == "ops@club"


def test_merge_endpoint_validation(client, supporter_factory):
    source = supporter_factory()
    target = supporter_factory()

    no_body = client.post(f"/ingestion/supporters/{source.id}/merge", data="nope")
    no_target = client.post(f"/ingestion/supporters/{source.id}/merge", json={"reason": "x"})
    no_reason = client.post(f"/ingestion/supporters/{source.id}/merge", json={"target_id": target.id})

    for response in (no_body, no_target, no_reason):
        assert response.status_code == 400
        assert response.get_json()["error"]["code"] == "INVALID_REQUEST"


def test_merge_endpoint_not_found(client, supporter_factory):
    target = supporter_factory()

    response = client.post(
        "/ingestion/supporters/unknown/merge", json={"target_id": target.id, "reason": "duplicate"}
    )

    assert response.status_code == 404
    assert response.get_json()["error"]["code"] == "SUPPORTER_NOT_FOUND"


def test_merge_endpoint_conflict(client, supporter_factory):
    source = supporter_factory(flags={FLAG_SHARED_EMAIL: True})
    target = supporter_factory()

    response = client.post(
        f"/ingestion/supporters/{source.id}/merge", json={"target_id": target.id, "reason": "duplicate"}
    )

    assert response.status_code == 409
    assert response.get_json()["error"]["code"] == "MERGE_CONFLICT"
    assert db.session.get(Supporter, source.id) is not None
