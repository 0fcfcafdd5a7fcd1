"""
Scheduled Mailchimp tag sync.

Canonical tags are computed from events, membership and supporter type, then
diff-pushed to every audience the supporter belongs to. Only tags inside the
managed namespace are ever removed, so tags added by hand in Mailchimp stay.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from supporter_app.ingestion.metrics import record_job_duration, record_tag_push
from supporter_app.ingestion.utils import ensure_utc, utcnow
from supporter_app.models import (
    SYSTEM_ACTOR,
    AudienceMembership,
    AuditLog,
    Event,
    EventType,
    Membership,
    ProductMeaning,
    Supporter,
    SupporterType,
    db,
)

from .settings import KEY_TAG_SYNC_LAST_RUN, ConfigStore

logger = logging.getLogger(__name__)

TAG_SYNC_ACTION = "mailchimp_tag_sync"
TAG_SYNC_REASON = "Scheduled Mailchimp sync"
RECENT_DAYS = 90
AWAY_DAYS = 365

MANAGED_PREFIXES = ("Member:", "ShopBuyer:", "TicketBuyer:", "AttendedMatch:", "AwaySupporter:")
MANAGED_TAGS = frozenset({"SeasonTicketHolder"} | {supporter_type.value for supporter_type in SupporterType})


def is_managed(tag: str) -> bool:
    return tag in MANAGED_TAGS or tag.startswith(MANAGED_PREFIXES)


@dataclass(frozen=True)
class TagContext:
    supporter: Supporter
    membership: Membership | None
    events: Sequence[Event]
    now: datetime

    def recent(self, event_type: EventType, days: int = RECENT_DAYS) -> bool:
        cutoff = self.now - timedelta(days=days)
        return any(
            event.event_type == event_type and ensure_utc(event.event_time) > cutoff for event in self.events
        )

    def meaning_within(self, meaning: ProductMeaning, days: int) -> bool:
        cutoff = self.now - timedelta(days=days)
        return any(
            meaning.value in event.product_meanings and ensure_utc(event.event_time) > cutoff
            for event in self.events
        )


def _member_status(ctx: TagContext) -> list[str]:
    if ctx.membership is None or ctx.membership.status is None:
        return []
    return [f"Member:{ctx.membership.status.value}"]


def _member_tier(ctx: TagContext) -> list[str]:
    if ctx.membership is None or ctx.membership.tier is None:
        return []
    return [f"Member:Tier:{ctx.membership.tier.value}"]


TAG_RULES: tuple[tuple[str, Callable[[TagContext], list[str]]], ...] = (
    ("member_status", _member_status),
    ("member_tier", _member_tier),
    ("shop_buyer", lambda ctx: ["ShopBuyer:Last90Days"] if ctx.recent(EventType.SHOP_ORDER) else []),
    ("ticket_buyer", lambda ctx: ["TicketBuyer:Last90Days"] if ctx.recent(EventType.TICKET_PURCHASE) else []),
    ("attended_match", lambda ctx: ["AttendedMatch:Last90Days"] if ctx.recent(EventType.STADIUM_ENTRY) else []),
    (
        "away_supporter",
        lambda ctx: ["AwaySupporter:Last365Days"] if ctx.meaning_within(ProductMeaning.AWAY_SUPPORTER, AWAY_DAYS) else [],
    ),
    (
        "season_ticket",
        lambda ctx: ["SeasonTicketHolder"] if ctx.meaning_within(ProductMeaning.SEASON_TICKET, AWAY_DAYS) else [],
    ),
    ("supporter_type", lambda ctx: [ctx.supporter.supporter_type.value] if ctx.supporter.supporter_type else []),
)


def compute_tags(ctx: TagContext) -> list[str]:
    tags: list[str] = []
    for _name, rule in TAG_RULES:
        for tag in rule(ctx):
            if tag not in tags:
                tags.append(tag)
    return tags


def diff_tags(current: Sequence[str], desired: Sequence[str]) -> tuple[set[str], set[str]]:
    """Return ``(add, remove)``; removal is limited to managed tags."""

    current_set, desired_set = set(current), set(desired)
    add = desired_set - current_set
    remove = {tag for tag in current_set - desired_set if is_managed(tag)}
    return add, remove


@dataclass
class TagSyncSummary:
    total_supporters: int = 0
    total_audiences: int = 0
    total_tags_updated: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    last_run: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_supporters": self.total_supporters,
            "total_audiences": self.total_audiences,
            "total_tags_updated": self.total_tags_updated,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "last_run": self.last_run,
        }


class TagSyncJob:
    def __init__(self, client, session: Session | None = None, *, now_fn: Callable[[], datetime] = utcnow):
        self.client = client
        self.session = session or db.session
        self.now_fn = now_fn

    def run(self) -> TagSyncSummary:
        started = time.monotonic()
        now = self.now_fn()
        summary = TagSyncSummary()

        for supporter_id in self._candidate_ids():
            summary.total_supporters += 1
            try:
                self._sync_supporter(supporter_id, now, summary)
            except Exception as exc:
                self.session.rollback()
                summary.errors.append(f"Supporter {supporter_id}: {exc}")
                logger.exception("Tag sync failed for supporter", extra={"supporter_id": supporter_id})

        summary.last_run = ConfigStore(self.session).stamp(
            KEY_TAG_SYNC_LAST_RUN, at=now, description="Mailchimp tag sync last run"
        )
        self.session.commit()
        elapsed = time.monotonic() - started
        summary.duration_ms = int(elapsed * 1000)
        record_job_duration("tag_sync", elapsed)
        logger.info("Mailchimp tag sync complete", extra={**summary.to_dict(), "errors": len(summary.errors)})
        return summary

    def _candidate_ids(self) -> list[str]:
        stmt = (
            select(Supporter.id)
            .where(
                Supporter.primary_email.is_not(None),
                Supporter.id.in_(select(AudienceMembership.supporter_id)),
            )
            .order_by(Supporter.id)
        )
        return list(self.session.scalars(stmt))

    def _sync_supporter(self, supporter_id: str, now: datetime, summary: TagSyncSummary) -> None:
        supporter = self.session.get(Supporter, supporter_id)
        if supporter is None:
            return
        ctx = TagContext(
            supporter=supporter,
            membership=self.session.scalar(select(Membership).where(Membership.supporter_id == supporter_id)),
            events=list(self.session.scalars(select(Event).where(Event.supporter_id == supporter_id))),
            now=now,
        )
        desired = compute_tags(ctx)
        audiences = list(
            self.session.scalars(select(AudienceMembership).where(AudienceMembership.supporter_id == supporter_id))
        )

        changes: list[dict[str, Any]] = []
        for audience in audiences:
            summary.total_audiences += 1
            try:
                change = self._sync_audience(supporter, audience, desired, now)
            except Exception as exc:
                # Other audiences still sync.
                record_tag_push("failure")
                summary.errors.append(f"Supporter {supporter_id} audience {audience.audience_id}: {exc}")
                logger.warning(
                    "Tag push failed",
                    extra={"supporter_id": supporter_id, "audience_id": audience.audience_id, "error": str(exc)},
                )
                continue
            if change is not None:
                summary.total_tags_updated += len(change["added"]) + len(change["removed"])
                changes.append(change)

        if changes:
            AuditLog.record(
                self.session,
                actor=SYSTEM_ACTOR,
                action_type=TAG_SYNC_ACTION,
                before={"supporter_id": supporter_id, "audiences": {c["audience_id"]: c["before"] for c in changes}},
                after={"supporter_id": supporter_id, "audiences": {c["audience_id"]: c["after"] for c in changes}},
                reason=TAG_SYNC_REASON,
            )
        self.session.commit()

    def _sync_audience(
        self,
        supporter: Supporter,
        audience: AudienceMembership,
        desired: list[str],
        now: datetime,
    ) -> dict[str, Any] | None:
        current = self.client.get_member_tags(audience.audience_id, supporter.primary_email)
        add, remove = diff_tags(current, desired)
        if not add and not remove:
            record_tag_push("unchanged")
            return None

        self.client.update_member_tags(audience.audience_id, supporter.primary_email, add=add, remove=remove)
        record_tag_push("success")

        final = sorted((set(current) - remove) | add)
        audience.tags = final
        audience.last_synced_at = now
        return {
            "audience_id": audience.audience_id,
            "before": sorted(current),
            "after": final,
            "added": sorted(add),
            "removed": sorted(remove),
        }


def run_tag_sync(client, session: Session | None = None, **kwargs) -> TagSyncSummary:
    return TagSyncJob(client, session, **kwargs).run()
