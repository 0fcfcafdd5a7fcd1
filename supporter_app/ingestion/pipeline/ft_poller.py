"""
Future Ticketing poller.

Future Ticketing has no webhooks, so customers, orders and entries are pulled
since per-entity checkpoints and fed through the regular processor. A record
that cannot be mapped is logged and counted as malformed without holding the
checkpoint back; a fetch or storage failure leaves that kind's checkpoint
where it was so the next poll retries the window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from supporter_app.ingestion.errors import MalformedMessage
from supporter_app.ingestion.metrics import record_job_duration
from supporter_app.ingestion.processors.futureticketing import FutureTicketingProcessor
from supporter_app.ingestion.utils import utcnow
from supporter_app.models import db

from .settings import ConfigStore, FTPollCheckpoint

logger = logging.getLogger(__name__)

# (message type, client method, checkpoint field)
ENTITY_KINDS = (
    ("customer", "iter_customers", "last_customer_fetch"),
    ("order", "iter_orders", "last_order_fetch"),
    ("entry", "iter_entries", "last_entry_fetch"),
)


@dataclass
class EntityPollResult:
    kind: str
    fetched: int = 0
    created: int = 0
    skipped: int = 0
    malformed: int = 0
    error: str | None = None
    record_errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "fetched": self.fetched,
            "created": self.created,
            "skipped": self.skipped,
            "malformed": self.malformed,
            "error": self.error,
            "record_errors": list(self.record_errors),
        }


@dataclass
class FTPollSummary:
    started_at: datetime
    results: list[EntityPollResult] = field(default_factory=list)
    checkpoint: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "results": [result.to_dict() for result in self.results],
            "checkpoint": dict(self.checkpoint),
        }


def poll_futureticketing(
    client,
    session: Session | None = None,
    *,
    processor: FutureTicketingProcessor | None = None,
    now_fn: Callable[[], datetime] = utcnow,
) -> FTPollSummary:
    session = session or db.session
    processor = processor or FutureTicketingProcessor(session)
    store = ConfigStore(session)
    checkpoint = FTPollCheckpoint.load(store)
    started_at = now_fn()
    summary = FTPollSummary(started_at=started_at)

    for kind, method_name, checkpoint_field in ENTITY_KINDS:
        result = EntityPollResult(kind=kind)
        summary.results.append(result)
        since = getattr(checkpoint, checkpoint_field)
        try:
            for record in getattr(client, method_name)(since):
                result.fetched += 1
                try:
                    outcome = processor.ingest({"type": kind, "data": record})
                except MalformedMessage as exc:
                    result.malformed += 1
                    result.record_errors.append(exc.detail)
                    logger.warning(
                        "Skipping malformed Future Ticketing %s",
                        kind,
                        extra={"ft_entity": kind, "error": exc.detail},
                    )
                    continue
                if outcome.created:
                    result.created += 1
                else:
                    result.skipped += 1
        except Exception as exc:
            result.error = str(exc)
            logger.exception(
                "Future Ticketing %s poll failed; checkpoint not advanced",
                kind,
                extra={"ft_entity": kind, "fetched": result.fetched},
            )
            continue
        checkpoint = replace(checkpoint, **{checkpoint_field: started_at})

    checkpoint.save(store)
    session.commit()
    summary.checkpoint = {
        name: value.isoformat() if value else None
        for name, value in (
            ("last_customer_fetch", checkpoint.last_customer_fetch),
            ("last_order_fetch", checkpoint.last_order_fetch),
            ("last_entry_fetch", checkpoint.last_entry_fetch),
        )
    }
    record_job_duration("ft_poll", (utcnow() - started_at).total_seconds())
    logger.info("Future Ticketing poll complete", extra={"ft_results": [r.to_dict() for r in summary.results]})
    return summary
