"""
Celery configuration helpers for the ingestion worker.

Celery stays optional until ingestion is enabled, and defaults to the SQLite
transport so developers do not need Redis for local work.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from celery.schedules import crontab
from flask import Flask
from kombu import Queue

INGESTION_QUEUE = "ingestion"
SCHEDULED_QUEUE = "scheduled"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"

BEAT_SCHEDULE = {
    "poll-futureticketing": {
        "task": "ingestion.poll_futureticketing",
        "schedule": crontab(minute="*/5"),
    },
    "run-reconciliation": {
        "task": "ingestion.run_reconciliation",
        "schedule": crontab(minute=15),
    },
    "run-tag-sync": {
        "task": "ingestion.run_tag_sync",
        "schedule": crontab(minute=30),
    },
    "run-classification": {
        "task": "ingestion.run_classification",
        "schedule": crontab(hour=2, minute=0),
    },
}


def _configure_quiet_loggers(app: Flask) -> None:
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _normalize_sqlite_path(app: Flask) -> Path:
    """
    Path backing the SQLite transport/result backend.

    ``CELERY_SQLITE_PATH`` overrides the default under the instance folder.
    """
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        sqlite_path = Path(configured)
        if not sqlite_path.is_absolute():
            sqlite_path = Path(app.instance_path) / sqlite_path
    else:
        sqlite_path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME

    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite_path


def _determine_connection_urls(app: Flask) -> tuple[str, str]:
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")

    if broker_url and result_backend:
        return broker_url, result_backend

    normalized = _normalize_sqlite_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def _extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf or None


def create_celery_app(app: Flask) -> Celery:
    """
    Create a Celery instance bound to ``app``.

    Swap to Redis/Postgres by setting ``CELERY_BROKER_URL`` and
    ``CELERY_RESULT_BACKEND``; anything else goes in ``CELERY_CONFIG`` (JSON).
    """
    broker_url, result_backend = _determine_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("supporter_app.ingestion.tasks",),
    )

    celery_app.conf.update(
        task_default_queue=INGESTION_QUEUE,
        task_queues=[Queue(INGESTION_QUEUE), Queue(SCHEDULED_QUEUE)],
        task_default_exchange=INGESTION_QUEUE,
        task_default_routing_key=INGESTION_QUEUE,
        task_routes={
            "ingestion.process_message": {"queue": INGESTION_QUEUE},
            "ingestion.run_*": {"queue": SCHEDULED_QUEUE},
            "ingestion.poll_futureticketing": {"queue": SCHEDULED_QUEUE},
        },
        beat_schedule=BEAT_SCHEDULE,
        timezone="UTC",
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("INGESTION_TASK_TIME_LIMIT", 15 * 60),
        task_soft_time_limit=app.config.get("INGESTION_TASK_SOFT_TIME_LIMIT", 12 * 60),
        worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
        worker_hijack_root_logger=False,
    )

    extra_conf = _extra_conf(app)
    app.logger.info(
        "Ingestion Celery configuration resolved",
        extra={
            "ingestion_celery_extra_conf": extra_conf,
            "ingestion_celery_broker_url": broker_url,
            "ingestion_celery_result_backend": result_backend,
            "ingestion_worker_enabled": app.config.get("INGESTION_WORKER_ENABLED"),
        },
    )
    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Run Celery tasks inside a Flask application context."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance from the ingestion extension state, created on demand when enabled."""
    state: dict[str, Any] | None = app.extensions.get("ingestion")  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app
