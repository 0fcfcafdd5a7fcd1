"""
Celery wiring and queue-consumer behaviour for the ingestion worker.
"""

import json
from typing import Any, Dict

import pytest
from flask import Flask
from sqlalchemy import select

from supporter_app.ingestion import get_celery_app, init_ingestion
from supporter_app.ingestion import tasks as ingestion_tasks
from supporter_app.ingestion.celery_app import BEAT_SCHEDULE, INGESTION_QUEUE, SCHEDULED_QUEUE
from supporter_app.ingestion.errors import TransientSourceError
from supporter_app.ingestion.registry import get_source_registry, missing_settings, resolve_sources
from supporter_app.models import Supporter, db


def build_ingestion_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with ingestion enabled for wiring tests.
    """
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        INGESTION_ENABLED=True,
        INGESTION_SOURCES=("shopify",),
    )
    app.config.update(overrides)
    init_ingestion(app)
    return app


def _task(app, name):
    return get_celery_app(app).tasks[name]


def test_celery_defaults_to_sqlite_transport(tmp_path):
    sqlite_path = tmp_path / "custom.sqlite"

    app = build_ingestion_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=json.dumps({"task_always_eager": True}),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == f"sqla+sqlite:///{sqlite_path.as_posix()}"
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == INGESTION_QUEUE
    assert celery_app.conf.task_acks_late is True
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_always_eager is True
    assert {queue.name for queue in celery_app.conf.task_queues} == {INGESTION_QUEUE, SCHEDULED_QUEUE}


def test_explicit_broker_urls_win(tmp_path):
    app = build_ingestion_app(
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        CELERY_SQLITE_PATH=str(tmp_path / "unused.sqlite"),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"


def test_beat_schedule_covers_scheduled_jobs():
    tasks = {entry["task"] for entry in BEAT_SCHEDULE.values()}
    assert tasks == {
        "ingestion.poll_futureticketing",
        "ingestion.run_reconciliation",
        "ingestion.run_tag_sync",
        "ingestion.run_classification",
    }


def test_disabled_app_has_no_celery():
    app = Flask(__name__)
    app.config.update(INGESTION_ENABLED=False)
    init_ingestion(app)

    assert get_celery_app(app) is None
    assert "ingestion" not in app.blueprints


def test_unknown_source_fails_fast():
    with pytest.raises(ValueError, match="eventbrite"):
        resolve_sources(("shopify", "eventbrite"), get_source_registry())


def test_missing_settings_lists_blank_values():
    descriptor = get_source_registry()["shopify"]
    assert missing_settings(descriptor, {"SHOPIFY_SHOP_DOMAIN": "club.myshopify.com"}) == ["SHOPIFY_ACCESS_TOKEN"]


def test_worker_ping_cli(app, runner):
    result = runner.invoke(args=["ingestion", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert payload["status"] == "ok"
    assert "timestamp" in payload


def test_worker_run_invokes_celery(app, runner, monkeypatch):
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(get_celery_app(app), "worker_main", fake_worker_main)

    result = runner.invoke(args=["ingestion", "worker", "run", "--pool", "solo", "--beat"])

    assert result.exit_code == 0, result.output
    assert calls["argv"][:5] == ["worker", "--loglevel", "info", "-Q", "ingestion,scheduled"]
    assert "--beat" in calls["argv"]
    assert calls["argv"][calls["argv"].index("--pool") + 1] == "solo"


def test_process_message_ingests(app):
    message = {
        "type": "customers/create",
        "data": {"id": 77, "email": "worker@example.com", "first_name": "Ann", "last_name": "Fan"},
    }

    result = _task(app, "ingestion.process_message").apply(args=("shopify", message))

    assert result.successful(), result.traceback
    assert result.get()["supporter_id"]
    supporter = db.session.scalar(select(Supporter).where(Supporter.primary_email == "worker@example.com"))
    assert supporter.linked_ids == {"shopify": "77"}


@pytest.mark.parametrize(
    "source_system, message",
    [("shopify", {"data": {}}), ("eventbrite", {"type": "order", "data": {}})],
)
def test_unusable_messages_are_rejected(app, source_system, message):
    result = _task(app, "ingestion.process_message").apply(args=(source_system, message))

    assert result.state == "REJECTED"


def test_transient_failures_retry_then_fail(app, monkeypatch):
    attempts = []

    class FlakyProcessor:
        def ingest(self, message):
            attempts.append(message)
            raise TransientSourceError("shopify", "503 from upstream", status_code=503)

    monkeypatch.setattr(ingestion_tasks, "get_processor", lambda source_system: FlakyProcessor())

    result = _task(app, "ingestion.process_message").apply(args=("shopify", {"type": "x", "data": {}}))

    assert result.state == "FAILURE"
    assert len(attempts) == app.config["INGESTION_MAX_RETRIES"] + 1


def test_scheduled_tasks_skip_without_credentials(app):
    tag_sync = _task(app, "ingestion.run_tag_sync").apply().get()
    poll = _task(app, "ingestion.poll_futureticketing").apply().get()
    reconciliation = _task(app, "ingestion.run_reconciliation").apply().get()

    assert tag_sync == {"status": "skipped", "reason": "mailchimp_not_configured"}
    assert poll["status"] == "skipped"
    assert reconciliation["results"] == []
    assert reconciliation["status"] == "ok"
