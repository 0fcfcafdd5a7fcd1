"""
Scheduled supporter type classifier.

Types are derived from an ordered rule chain; the first rule whose predicate
holds wins. Supporters whose type was set by an administrator are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from supporter_app.ingestion.metrics import record_classifier_change, record_job_duration
from supporter_app.ingestion.utils import ensure_utc, utcnow
from supporter_app.models import (
    SYSTEM_ACTOR,
    AuditLog,
    Event,
    EventType,
    Membership,
    MembershipStatus,
    ProductMeaning,
    Supporter,
    SupporterType,
    SupporterTypeSource,
    db,
)

from .settings import KEY_CLASSIFIER_LAST_RUN, ClassifierSettings, ConfigStore

logger = logging.getLogger(__name__)

TYPE_CHANGE_ACTION = "supporter_type_change"
TYPE_CHANGE_REASON = "Scheduled classification"


def is_membership_active(membership: Membership | None, grace_days: int, today: date) -> bool:
    """
    Active, or Past Due and still inside the grace window.

    The window is inclusive: ``today <= last_payment_date + grace_days``.
    """

    if membership is None:
        return False
    if membership.status == MembershipStatus.ACTIVE:
        return True
    if membership.status == MembershipStatus.PAST_DUE and membership.last_payment_date is not None:
        return today <= membership.last_payment_date + timedelta(days=grace_days)
    return False


@dataclass(frozen=True)
class ClassificationContext:
    """Everything the rule chain needs to know about one supporter."""

    membership: Membership | None
    events: Sequence[Event]
    settings: ClassifierSettings
    now: datetime

    @property
    def today(self) -> date:
        return self.now.date()

    def within(self, event: Event, days: int) -> bool:
        event_time = ensure_utc(event.event_time)
        return event_time is not None and event_time >= self.now - timedelta(days=days)

    def has_meaning(self, event: Event, meaning: ProductMeaning) -> bool:
        return meaning.value in event.product_meanings


def _has_active_membership(ctx: ClassificationContext) -> bool:
    return is_membership_active(ctx.membership, ctx.settings.grace_days, ctx.today)


def _has_season_ticket(ctx: ClassificationContext) -> bool:
    return any(ctx.has_meaning(event, ProductMeaning.SEASON_TICKET) for event in ctx.events)


def _is_away_only(ctx: ClassificationContext) -> bool:
    away_recent = any(
        ctx.has_meaning(event, ProductMeaning.AWAY_SUPPORTER) and ctx.within(event, ctx.settings.away_lookback_days)
        for event in ctx.events
    )
    if not away_recent:
        return False
    other_activity = any(
        event.event_type in (EventType.TICKET_PURCHASE, EventType.SHOP_ORDER)
        and not ctx.has_meaning(event, ProductMeaning.AWAY_SUPPORTER)
        and ctx.within(event, ctx.settings.ticket_lookback_days)
        for event in ctx.events
    )
    return not other_activity


def _has_recent_ticket(ctx: ClassificationContext) -> bool:
    return any(
        event.event_type == EventType.TICKET_PURCHASE and ctx.within(event, ctx.settings.ticket_lookback_days)
        for event in ctx.events
    )


def _has_recent_shop_order(ctx: ClassificationContext) -> bool:
    return any(
        event.event_type == EventType.SHOP_ORDER and ctx.within(event, ctx.settings.shop_lookback_days)
        for event in ctx.events
    )


RULES: tuple[tuple[str, Callable[[ClassificationContext], bool], SupporterType], ...] = (
    ("active_membership", _has_active_membership, SupporterType.MEMBER),
    ("season_ticket", _has_season_ticket, SupporterType.SEASON_TICKET_HOLDER),
    ("away_only", _is_away_only, SupporterType.AWAY_SUPPORTER),
    ("recent_ticket", _has_recent_ticket, SupporterType.TICKET_BUYER),
    ("recent_shop_order", _has_recent_shop_order, SupporterType.SHOP_BUYER),
)


def classify(ctx: ClassificationContext) -> SupporterType:
    for _name, predicate, result in RULES:
        if predicate(ctx):
            return result
    return SupporterType.UNKNOWN


@dataclass
class ClassificationSummary:
    total_processed: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped_admin_override: int = 0
    errors: int = 0
    type_changes: dict[str, int] = field(default_factory=dict)
    last_run: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped_admin_override": self.skipped_admin_override,
            "errors": self.errors,
            "type_changes": dict(self.type_changes),
            "last_run": self.last_run,
        }


class SupporterTypeClassifier:
    def __init__(
        self,
        session: Session | None = None,
        *,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.session = session or db.session
        self.now_fn = now_fn

    def run(self) -> ClassificationSummary:
        started = utcnow()
        store = ConfigStore(self.session)
        settings = ClassifierSettings.load(store)
        now = self.now_fn()
        summary = ClassificationSummary()

        summary.skipped_admin_override = self._count_overrides()
        for supporter_id in self._candidate_ids():
            summary.total_processed += 1
            try:
                self._classify_one(supporter_id, settings, now, summary)
            except Exception:
                # One bad record must not stop the batch.
                self.session.rollback()
                summary.errors += 1
                logger.exception("Failed to classify supporter", extra={"supporter_id": supporter_id})

        summary.last_run = store.stamp(KEY_CLASSIFIER_LAST_RUN, at=now, description="Supporter type classifier last run")
        self.session.commit()
        record_job_duration("classification", (utcnow() - started).total_seconds())
        logger.info("Supporter type classification complete", extra=summary.to_dict())
        return summary

    def _count_overrides(self) -> int:
        stmt = select(Supporter.id).where(Supporter.supporter_type_source == SupporterTypeSource.ADMIN_OVERRIDE)
        return len(list(self.session.scalars(stmt)))

    def _candidate_ids(self) -> Iterable[str]:
        stmt = (
            select(Supporter.id)
            .where(Supporter.supporter_type_source != SupporterTypeSource.ADMIN_OVERRIDE)
            .order_by(Supporter.id)
        )
        return list(self.session.scalars(stmt))

    def _classify_one(
        self,
        supporter_id: str,
        settings: ClassifierSettings,
        now: datetime,
        summary: ClassificationSummary,
    ) -> None:
        supporter = self.session.get(Supporter, supporter_id)
        if supporter is None or supporter.is_admin_override:
            return
        ctx = ClassificationContext(
            membership=self.session.scalar(select(Membership).where(Membership.supporter_id == supporter_id)),
            events=list(self.session.scalars(select(Event).where(Event.supporter_id == supporter_id))),
            settings=settings,
            now=now,
        )
        new_type = classify(ctx)
        old_type = supporter.supporter_type
        if new_type == old_type:
            summary.unchanged += 1
            return

        supporter.supporter_type = new_type
        AuditLog.record(
            self.session,
            actor=SYSTEM_ACTOR,
            action_type=TYPE_CHANGE_ACTION,
            before={"supporter_id": supporter_id, "old_type": old_type.value if old_type else None},
            after={"supporter_id": supporter_id, "new_type": new_type.value},
            reason=TYPE_CHANGE_REASON,
        )
        self.session.commit()
        summary.updated += 1
        transition = f"{old_type.value if old_type else None} -> {new_type.value}"
        summary.type_changes[transition] = summary.type_changes.get(transition, 0) + 1
        record_classifier_change(new_type.value)


def run_classification(session: Session | None = None, **kwargs) -> ClassificationSummary:
    return SupporterTypeClassifier(session, **kwargs).run()
