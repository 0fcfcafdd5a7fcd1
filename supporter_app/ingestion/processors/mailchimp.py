"""
Mailchimp webhook processor (email clicks).
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select

from supporter_app.ingestion.pipeline.event_store import EventDraft
from supporter_app.ingestion.pipeline.identity import IdentitySignals
from supporter_app.ingestion.pipeline.idempotency import mailchimp_click_key
from supporter_app.ingestion.utils import clean_str, ensure_utc, normalize_email, parse_timestamp, utcnow
from supporter_app.models import EngagementAggregate, Event, EventType, SourceSystem, Supporter

from .base import BaseProcessor, IngestMessage, IngestResult, SKIP_MISSING_IDENTITY


def map_click(data: Mapping[str, Any], *, now=None) -> EventDraft:
    """
    EmailClick draft. The raw timestamp text is part of the key, so a click
    with no timestamp is keyed on the time it was received.
    """

    now = now or utcnow()
    raw_timestamp = clean_str(data.get("timestamp")) or now.isoformat()
    email = normalize_email(data.get("email"))
    return EventDraft(
        key=mailchimp_click_key(clean_str(data.get("campaign_id")), email, raw_timestamp),
        event_type=EventType.EMAIL_CLICK,
        event_time=parse_timestamp(raw_timestamp, default=None) or now,
        amount=None,
        currency=None,
        metadata={
            "email": data.get("email"),
            "campaign_id": data.get("campaign_id"),
            "url": data.get("url"),
        },
    )


class MailchimpProcessor(BaseProcessor):
    source_system = SourceSystem.MAILCHIMP.value

    def handlers(self):
        return {"click": self.handle_click}

    def handle_click(self, message: IngestMessage) -> IngestResult:
        signals = IdentitySignals.build(email=message.data.get("email"))
        if not signals.email:
            self.logger.warning("Mailchimp click without email; skipping", extra={"source_system": self.source_system})
            return self.skip(message, SKIP_MISSING_IDENTITY)
        draft = self.map_or_malformed(map_click, message.data)
        return self.record_event(
            message,
            draft,
            signals,
            create_if_missing=False,
            after_insert=self._count_click,
        )

    def _count_click(self, supporter: Supporter, event: Event) -> None:
        aggregate = self.session.scalar(
            select(EngagementAggregate).where(EngagementAggregate.supporter_id == supporter.id)
        )
        if aggregate is None:
            aggregate = EngagementAggregate(supporter_id=supporter.id, click_count=0)
            self.session.add(aggregate)
        aggregate.click_count = (aggregate.click_count or 0) + 1
        last_click = ensure_utc(aggregate.last_click_at)
        event_time = ensure_utc(event.event_time)
        if last_click is None or event_time > last_click:
            aggregate.last_click_at = event_time
