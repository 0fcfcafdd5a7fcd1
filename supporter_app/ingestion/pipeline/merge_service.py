"""
Merge service for consolidating two supporter records.

Merges are operator-triggered and run as a single transaction: every
reassignment, the audit row and the deletion of the losing supporter either
commit together or not at all.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from supporter_app.ingestion.errors import InvalidMergeRequest, MergeConflict, SupporterNotFound
from supporter_app.ingestion.metrics import record_merge
from supporter_app.ingestion.utils import ensure_utc, normalize_email
from supporter_app.models import (
    FLAG_SHARED_EMAIL,
    AudienceMembership,
    AuditLog,
    EmailAlias,
    EngagementAggregate,
    Event,
    Membership,
    Supporter,
    db,
)

logger = logging.getLogger(__name__)

MERGE_ACTION = "merge"


class MergeService:
    """Service for merging a losing (source) supporter into a surviving (target) one."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    @contextmanager
    def _transaction(self):
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def merge(self, source_id: str, target_id: str, *, actor: str, reason: str) -> Supporter:
        """
        Merge ``source_id`` into ``target_id``.

        Args:
            source_id: Supporter that will be deleted.
            target_id: Supporter that survives and receives all history.
            actor: Operator identifier written to the audit log.
            reason: Mandatory free-text justification.

        Returns:
            The surviving target supporter.

        Raises:
            InvalidMergeRequest: reason is blank.
            MergeConflict: self-merge, shared-email flag, identical primary
                email or a shared alias.
            SupporterNotFound: either supporter does not exist.
        """

        if not reason or not str(reason).strip():
            record_merge("conflict")
            raise InvalidMergeRequest("A reason is required to merge supporters")
        if source_id == target_id:
            record_merge("conflict")
            raise MergeConflict("Cannot merge a supporter with itself")

        try:
            with self._transaction():
                source, target = self._lock_pair(source_id, target_id)
                self._check_conflicts(source, target)
                before = {"source": source.to_snapshot(), "target": target.to_snapshot()}

                moved = self._reassign_history(source, target)
                target.linked_ids = {**(source.linked_ids or {}), **(target.linked_ids or {})}

                AuditLog.record(
                    self.session,
                    actor=actor or "unknown",
                    action_type=MERGE_ACTION,
                    before=before,
                    after={"merged_into": target.id, "target": target.to_snapshot(), "moved": moved},
                    reason=reason.strip(),
                )
                self.session.delete(source)
                self.session.flush()
        except SupporterNotFound:
            record_merge("not_found")
            raise
        except MergeConflict:
            record_merge("conflict")
            raise
        except Exception:
            record_merge("failure")
            logger.exception(
                "Supporter merge failed; rolled back",
                extra={"source_supporter_id": source_id, "target_supporter_id": target_id},
            )
            raise

        record_merge("success")
        logger.info(
            "Merged supporter %s into %s",
            source_id,
            target_id,
            extra={"source_supporter_id": source_id, "target_supporter_id": target_id, "actor": actor, **moved},
        )
        return target

    # Preconditions -----------------------------------------------------------

    def _lock_pair(self, source_id: str, target_id: str) -> tuple[Supporter, Supporter]:
        # Sorted order keeps concurrent merges over the same pair from deadlocking.
        ids = sorted((source_id, target_id))
        stmt = select(Supporter).where(Supporter.id.in_(ids)).order_by(Supporter.id).with_for_update()
        rows = {supporter.id: supporter for supporter in self.session.scalars(stmt)}
        for supporter_id in (source_id, target_id):
            if supporter_id not in rows:
                raise SupporterNotFound(supporter_id)
        return rows[source_id], rows[target_id]

    def _check_conflicts(self, source: Supporter, target: Supporter) -> None:
        if source.has_flag(FLAG_SHARED_EMAIL) or target.has_flag(FLAG_SHARED_EMAIL):
            raise MergeConflict("Cannot merge supporters with shared email flag")
        source_email = normalize_email(source.primary_email)
        if source_email and source_email == normalize_email(target.primary_email):
            raise MergeConflict("Cannot merge supporters with identical primary email - they may be different people")
        shared = self._alias_emails(source.id) & self._alias_emails(target.id)
        if shared:
            raise MergeConflict("Cannot merge supporters with shared email addresses")

    def _alias_emails(self, supporter_id: str) -> set[str]:
        emails = self.session.scalars(select(EmailAlias.email).where(EmailAlias.supporter_id == supporter_id))
        return {normalize_email(email) for email in emails} - {None}

    # Reassignment ------------------------------------------------------------

    def _reassign_history(self, source: Supporter, target: Supporter) -> dict[str, Any]:
        events_moved = self.session.execute(
            update(Event).where(Event.supporter_id == source.id).values(supporter_id=target.id)
        ).rowcount

        aliases_moved = self.session.execute(
            update(EmailAlias).where(EmailAlias.supporter_id == source.id).values(supporter_id=target.id)
        ).rowcount

        target_audiences = select(AudienceMembership.audience_id).where(AudienceMembership.supporter_id == target.id)
        audiences_dropped = self.session.execute(
            delete(AudienceMembership).where(
                AudienceMembership.supporter_id == source.id,
                AudienceMembership.audience_id.in_(target_audiences.scalar_subquery()),
            )
        ).rowcount
        audiences_moved = self.session.execute(
            update(AudienceMembership)
            .where(AudienceMembership.supporter_id == source.id)
            .values(supporter_id=target.id)
        ).rowcount

        membership_outcome = self._merge_membership(source, target)
        self._merge_engagement(source, target)
        self.session.expire_all()

        return {
            "events_moved": events_moved or 0,
            "aliases_moved": aliases_moved or 0,
            "audiences_moved": audiences_moved or 0,
            "audiences_dropped": audiences_dropped or 0,
            "membership": membership_outcome,
        }

    def _merge_membership(self, source: Supporter, target: Supporter) -> str:
        source_membership = self.session.scalar(select(Membership).where(Membership.supporter_id == source.id))
        if source_membership is None:
            return "none"
        target_membership = self.session.scalar(select(Membership).where(Membership.supporter_id == target.id))
        if target_membership is None:
            source_membership.supporter_id = target.id
            self.session.flush()
            return "moved"
        self.session.delete(source_membership)
        self.session.flush()
        return "target_kept"

    def _merge_engagement(self, source: Supporter, target: Supporter) -> None:
        source_agg = self.session.scalar(
            select(EngagementAggregate).where(EngagementAggregate.supporter_id == source.id)
        )
        if source_agg is None:
            return
        target_agg = self.session.scalar(
            select(EngagementAggregate).where(EngagementAggregate.supporter_id == target.id)
        )
        if target_agg is None:
            source_agg.supporter_id = target.id
            self.session.flush()
            return
        target_agg.click_count = (target_agg.click_count or 0) + (source_agg.click_count or 0)
        candidates = [ensure_utc(value) for value in (target_agg.last_click_at, source_agg.last_click_at) if value]
        target_agg.last_click_at = max(candidates) if candidates else None
        self.session.delete(source_agg)
        self.session.flush()
