"""
Event Store: append-mostly ledger keyed by ``(source_system, external_id)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from supporter_app.models import DEFAULT_CURRENCY, Event, EventType, Supporter, db

from .idempotency import IdempotencyKey


@dataclass(frozen=True)
class EventDraft:
    """Canonical event shape produced by payload mappers before identity is known."""

    key: IdempotencyKey
    event_type: EventType
    event_time: datetime
    amount: Decimal | None = None
    currency: str | None = DEFAULT_CURRENCY
    metadata: dict[str, Any] = field(default_factory=dict)
    raw_payload_ref: str | None = None

    @property
    def source_system(self) -> str:
        return self.key.source_system

    @property
    def external_id(self) -> str:
        return self.key.external_id

    def with_metadata(self, **extra: Any) -> "EventDraft":
        return replace(self, metadata={**self.metadata, **extra})

    def with_payload_ref(self, raw_payload_ref: str | None) -> "EventDraft":
        return replace(self, raw_payload_ref=raw_payload_ref or None)


class EventStore:
    """Existence checks and inserts against the idempotency key."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def exists(self, key: IdempotencyKey) -> bool:
        stmt = select(
            exists().where(
                Event.source_system == key.source_system,
                Event.external_id == key.external_id,
            )
        )
        return bool(self.session.scalar(stmt))

    def get(self, key: IdempotencyKey) -> Event | None:
        stmt = select(Event).where(
            Event.source_system == key.source_system,
            Event.external_id == key.external_id,
        )
        return self.session.scalar(stmt)

    def insert(self, supporter: Supporter, draft: EventDraft) -> Event:
        """
        Stage the event and flush so a duplicate key surfaces immediately.

        A racing duplicate raises ``sqlalchemy.exc.IntegrityError``; callers
        roll back and re-check ``exists`` to tell it apart from other failures.
        """

        event = Event(
            supporter_id=supporter.id,
            source_system=draft.source_system,
            event_type=draft.event_type,
            event_time=draft.event_time,
            external_id=draft.external_id,
            amount=draft.amount,
            currency=draft.currency,
            metadata_json=dict(draft.metadata),
            raw_payload_ref=draft.raw_payload_ref,
        )
        self.session.add(event)
        self.session.flush()
        return event

    def for_supporter(
        self,
        supporter_id: str,
        *,
        since: datetime | None = None,
        event_types: Iterable[EventType] | None = None,
    ) -> list[Event]:
        stmt = select(Event).where(Event.supporter_id == supporter_id)
        if since is not None:
            stmt = stmt.where(Event.event_time >= since)
        if event_types is not None:
            stmt = stmt.where(Event.event_type.in_(list(event_types)))
        return list(self.session.scalars(stmt.order_by(Event.event_time.desc())))
