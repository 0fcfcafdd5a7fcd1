"""
Shared ingestion contract.

Each processor handles one inbound message inside one transaction: map the
payload, short-circuit on a known idempotency key, resolve identity, write the
event and apply derived attribute updates. Business skips commit whatever
flagging happened; unexpected errors roll back and propagate so the queue can
redeliver.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supporter_app.ingestion.errors import MalformedMessage
from supporter_app.ingestion.metrics import record_message_processed
from supporter_app.ingestion.pipeline.event_store import EventDraft, EventStore
from supporter_app.ingestion.pipeline.identity import IdentityResolver, IdentitySignals, Resolution
from supporter_app.ingestion.utils import clean_str
from supporter_app.models import Event, Supporter, db


@dataclass(frozen=True)
class IngestMessage:
    """One queue item: ``{type, data, raw_payload_ref?}``."""

    type: str
    data: Mapping[str, Any]
    raw_payload_ref: str | None = None

    @classmethod
    def parse(cls, source_system: str, payload: Any) -> "IngestMessage":
        if isinstance(payload, IngestMessage):
            return payload
        if not isinstance(payload, Mapping):
            raise MalformedMessage(source_system, "message body must be an object")
        message_type = clean_str(payload.get("type"))
        if message_type is None:
            raise MalformedMessage(source_system, "missing 'type'")
        data = payload.get("data")
        if not isinstance(data, Mapping):
            raise MalformedMessage(source_system, "'data' must be an object")
        raw_ref = payload.get("raw_payload_ref", payload.get("rawPayloadRef"))
        return cls(type=message_type, data=data, raw_payload_ref=clean_str(raw_ref))


@dataclass(frozen=True)
class IngestResult:
    created: bool
    source_system: str
    message_type: str
    external_id: str | None = None
    supporter_id: str | None = None
    skipped_reason: str | None = None

    @property
    def outcome(self) -> str:
        if self.created:
            return "created"
        return self.skipped_reason or "no_event"

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "source_system": self.source_system,
            "message_type": self.message_type,
            "external_id": self.external_id,
            "supporter_id": self.supporter_id,
            "skipped_reason": self.skipped_reason,
        }


SKIP_ALREADY_PROCESSED = "already_processed"
SKIP_AMBIGUOUS = "ambiguous_identity"
SKIP_NO_SUPPORTER = "no_supporter"
SKIP_UNHANDLED_TYPE = "unhandled_type"
SKIP_MISSING_IDENTITY = "missing_identity"


class BaseProcessor:
    """Template for source processors; subclasses register handlers per message type."""

    source_system: ClassVar[str]

    def __init__(
        self,
        session: Session | None = None,
        *,
        resolver: IdentityResolver | None = None,
        event_store: EventStore | None = None,
        logger: logging.Logger | None = None,
    ):
        self.session = session or db.session
        self.resolver = resolver or IdentityResolver(self.session)
        self.events = event_store or EventStore(self.session)
        self.logger = logger or logging.getLogger(self.__class__.__module__)

    # Subclass hooks ------------------------------------------------------------------

    def handlers(self) -> Mapping[str, Callable[[IngestMessage], IngestResult]]:
        raise NotImplementedError

    # Public API ----------------------------------------------------------------------

    def ingest(self, payload: Any) -> IngestResult:
        message = IngestMessage.parse(self.source_system, payload)
        handler = self.handlers().get(message.type)
        if handler is None:
            self.logger.info(
                "Unhandled %s message type %s",
                self.source_system,
                message.type,
                extra={"source_system": self.source_system, "message_type": message.type},
            )
            result = self.skip(message, SKIP_UNHANDLED_TYPE)
            record_message_processed(self.source_system, result.outcome)
            return result

        with self._transaction():
            result = handler(message)
        record_message_processed(self.source_system, result.outcome)
        return result

    # Helpers for subclasses ---------------------------------------------------------

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def skip(self, message: IngestMessage, reason: str, *, external_id: str | None = None) -> IngestResult:
        return IngestResult(
            created=False,
            source_system=self.source_system,
            message_type=message.type,
            external_id=external_id,
            skipped_reason=reason,
        )

    def map_or_malformed(self, mapper: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a payload mapper; missing key fields become ``MalformedMessage``."""

        try:
            return mapper(*args, **kwargs)
        except ValueError as exc:
            raise MalformedMessage(self.source_system, str(exc)) from exc

    def record_event(
        self,
        message: IngestMessage,
        draft: EventDraft,
        signals: IdentitySignals,
        *,
        create_if_missing: bool,
        decorate: Callable[[EventDraft], EventDraft] | None = None,
        after_insert: Callable[[Supporter, Event], None] | None = None,
    ) -> IngestResult:
        """
        Run the idempotent event path for one message.

        ``decorate`` enriches the draft (e.g. product meanings) only once we know
        the event is new; ``after_insert`` applies derived supporter updates.
        """

        if self.events.exists(draft.key):
            self.logger.info(
                "Event already processed",
                extra={"source_system": draft.source_system, "external_id": draft.external_id},
            )
            return self.skip(message, SKIP_ALREADY_PROCESSED, external_id=draft.external_id)

        resolution = self.resolver.resolve(signals, create_if_missing=create_if_missing)
        skipped = self._skip_for_resolution(message, resolution, draft.external_id)
        if skipped is not None:
            return skipped

        supporter = resolution.supporter
        draft = draft.with_payload_ref(message.raw_payload_ref)
        if decorate is not None:
            draft = decorate(draft)

        try:
            event = self.events.insert(supporter, draft)
        except IntegrityError:
            # Another worker inserted the same key first; its transaction owns the side effects.
            self.session.rollback()
            if self.events.exists(draft.key):
                self.logger.info(
                    "Concurrent duplicate delivery detected",
                    extra={"source_system": draft.source_system, "external_id": draft.external_id},
                )
                return self.skip(message, SKIP_ALREADY_PROCESSED, external_id=draft.external_id)
            raise

        if after_insert is not None:
            after_insert(supporter, event)

        self.logger.info(
            "Recorded %s event",
            draft.event_type.value,
            extra={
                "source_system": draft.source_system,
                "external_id": draft.external_id,
                "supporter_id": supporter.id,
                "event_type": draft.event_type.value,
            },
        )
        return IngestResult(
            created=True,
            source_system=self.source_system,
            message_type=message.type,
            external_id=draft.external_id,
            supporter_id=supporter.id,
        )

    def _skip_for_resolution(
        self,
        message: IngestMessage,
        resolution: Resolution,
        external_id: str | None,
    ) -> IngestResult | None:
        if resolution.ambiguous:
            self.logger.warning(
                "Skipping %s message: ambiguous identity",
                self.source_system,
                extra={
                    "source_system": self.source_system,
                    "external_id": external_id,
                    "supporter_ids": list(resolution.matches),
                },
            )
            return self.skip(message, SKIP_AMBIGUOUS, external_id=external_id)
        if resolution.supporter is None:
            self.logger.info(
                "Skipping %s message: no matching supporter",
                self.source_system,
                extra={"source_system": self.source_system, "external_id": external_id},
            )
            return self.skip(message, SKIP_NO_SUPPORTER, external_id=external_id)
        return None

    def backfill_contact(self, supporter: Supporter, *, name: str | None, phone: str | None) -> None:
        """Fill name/phone only when the supporter has none."""

        if name and not supporter.name:
            supporter.name = name
        if phone and not supporter.phone:
            supporter.phone = phone

    def upsert_identity(self, message: IngestMessage, signals: IdentitySignals) -> IngestResult:
        """Customer-profile messages: resolve or create, then backfill contact fields."""

        if not signals.email and not signals.has_linked_id:
            return self.skip(message, SKIP_MISSING_IDENTITY)
        resolution = self.resolver.resolve(signals, create_if_missing=True)
        skipped = self._skip_for_resolution(message, resolution, None)
        if skipped is not None:
            return skipped
        supporter = resolution.supporter
        self.backfill_contact(supporter, name=signals.name, phone=signals.phone)
        return IngestResult(
            created=False,
            source_system=self.source_system,
            message_type=message.type,
            supporter_id=supporter.id,
            skipped_reason=None if resolution.created else "profile_updated",
        )
