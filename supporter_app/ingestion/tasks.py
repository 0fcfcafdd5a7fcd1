"""
Ingestion Celery tasks.

``process_message`` is the queue consumer: one message per task, acknowledged
late so a worker crash redelivers. Malformed or unroutable messages are
rejected without requeue (dead-lettered); transient failures retry with
exponential backoff. The remaining tasks are the scheduled jobs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from celery.exceptions import Reject
from flask import current_app
from sqlalchemy.exc import OperationalError

from supporter_app.ingestion.adapters import build_clients
from supporter_app.ingestion.errors import MalformedMessage, TransientSourceError, UnknownSourceSystem
from supporter_app.ingestion.pipeline.classifier import run_classification as classify_supporters
from supporter_app.ingestion.pipeline.ft_poller import poll_futureticketing as poll_ft
from supporter_app.ingestion.pipeline.reconciler import ReconciliationJob, build_reconcilers
from supporter_app.ingestion.pipeline.tag_sync import run_tag_sync as sync_tags
from supporter_app.ingestion.processors import get_processor
from supporter_app.models.base import db


@shared_task(name="ingestion.healthcheck", bind=True)
def ingestion_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


def _retry_countdown(retries: int) -> int:
    backoff = int(current_app.config.get("INGESTION_RETRY_BACKOFF_SECONDS", 30))
    return backoff * (2**retries)


@shared_task(name="ingestion.process_message", bind=True)
def process_message(self, source_system: str, message: dict[str, Any]) -> dict[str, Any]:
    try:
        processor = get_processor(source_system)
        result = processor.ingest(message)
    except (MalformedMessage, UnknownSourceSystem) as exc:
        current_app.logger.error(
            "Dead-lettering ingestion message",
            extra={"source_system": source_system, "error": str(exc), "task_id": self.request.id},
        )
        raise Reject(str(exc), requeue=False) from exc
    except (TransientSourceError, OperationalError) as exc:
        db.session.rollback()
        max_retries = int(current_app.config.get("INGESTION_MAX_RETRIES", 5))
        countdown = _retry_countdown(self.request.retries)
        current_app.logger.warning(
            "Transient ingestion failure; retrying",
            extra={
                "source_system": source_system,
                "error": str(exc),
                "retries": self.request.retries,
                "countdown": countdown,
            },
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_retries)
    return result.to_dict()


@shared_task(name="ingestion.run_classification", bind=True)
def run_classification(self) -> dict[str, Any]:
    summary = classify_supporters()
    return summary.to_dict()


@shared_task(name="ingestion.run_reconciliation", bind=True)
def run_reconciliation(self, *, lookback_hours: int | None = None) -> dict[str, Any]:
    clients = build_clients(current_app.config)
    reconcilers = build_reconcilers(clients, db.session)
    if not reconcilers:
        current_app.logger.info("Reconciliation skipped; no source credentials configured")
    run = ReconciliationJob(reconcilers, db.session).run(lookback_hours=lookback_hours)
    return run.to_dict()


@shared_task(name="ingestion.run_tag_sync", bind=True)
def run_tag_sync(self) -> dict[str, Any]:
    clients = build_clients(current_app.config)
    if clients.mailchimp is None:
        current_app.logger.info("Mailchimp tag sync skipped; MAILCHIMP_API_KEY not configured")
        return {"status": "skipped", "reason": "mailchimp_not_configured"}
    return sync_tags(clients.mailchimp).to_dict()


@shared_task(name="ingestion.poll_futureticketing", bind=True)
def poll_futureticketing(self) -> dict[str, Any]:
    clients = build_clients(current_app.config)
    if clients.futureticketing is None:
        current_app.logger.info("Future Ticketing poll skipped; API credentials not configured")
        return {"status": "skipped", "reason": "futureticketing_not_configured"}
    return poll_ft(clients.futureticketing).to_dict()
