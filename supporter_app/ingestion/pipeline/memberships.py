"""
Membership state changes driven by billing events.
"""

from __future__ import annotations

import calendar
import logging
from datetime import date
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from supporter_app.ingestion.utils import clean_str
from supporter_app.models import (
    BillingMethod,
    Membership,
    MembershipCadence,
    MembershipStatus,
    MembershipTier,
    Supporter,
    db,
)

logger = logging.getLogger(__name__)


def parse_tier(value: Any) -> MembershipTier | None:
    token = (clean_str(value) or "").lower()
    for tier in MembershipTier:
        if tier.value.lower() == token:
            return tier
    return None


def parse_cadence(value: Any) -> MembershipCadence | None:
    token = (clean_str(value) or "").lower()
    for cadence in MembershipCadence:
        if cadence.value.lower() == token:
            return cadence
    return None


def next_payment_date(paid_on: date, cadence: MembershipCadence | None) -> date | None:
    if cadence == MembershipCadence.ANNUAL:
        year = paid_on.year + 1
        day = min(paid_on.day, calendar.monthrange(year, paid_on.month)[1])
        return paid_on.replace(year=year, day=day)
    if cadence == MembershipCadence.MONTHLY:
        year = paid_on.year + (paid_on.month // 12)
        month = paid_on.month % 12 + 1
        day = min(paid_on.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)
    return None


class MembershipUpdater:
    """Apply billing-driven state changes to a supporter's membership."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def get(self, supporter: Supporter) -> Membership | None:
        return self.session.scalar(select(Membership).where(Membership.supporter_id == supporter.id))

    def mark_paid(
        self,
        supporter: Supporter,
        *,
        billing_method: BillingMethod,
        paid_on: date,
        tier: MembershipTier | None = None,
        cadence: MembershipCadence | None = None,
    ) -> Membership:
        membership = self.get(supporter)
        if membership is None:
            membership = Membership(supporter_id=supporter.id)
            self.session.add(membership)
        membership.status = MembershipStatus.ACTIVE
        membership.billing_method = billing_method
        if tier is not None:
            membership.tier = tier
        if cadence is not None:
            membership.cadence = cadence
        if membership.last_payment_date is None or paid_on >= membership.last_payment_date:
            membership.last_payment_date = paid_on
            membership.next_expected_payment_date = next_payment_date(paid_on, membership.cadence)
        logger.info(
            "Membership marked active",
            extra={"supporter_id": supporter.id, "billing_method": billing_method.value},
        )
        return membership

    def upsert(
        self,
        supporter: Supporter,
        *,
        billing_method: BillingMethod,
        status: MembershipStatus,
        cadence: MembershipCadence | None = None,
    ) -> Membership:
        """Record a mandate or subscription state; payment dates stay with ``mark_paid``."""

        membership = self.get(supporter)
        if membership is None:
            membership = Membership(supporter_id=supporter.id)
            self.session.add(membership)
        membership.status = status
        membership.billing_method = billing_method
        if cadence is not None:
            membership.cadence = cadence
        logger.info(
            "Membership set %s",
            status.value,
            extra={"supporter_id": supporter.id, "billing_method": billing_method.value},
        )
        return membership

    def mark_past_due(self, supporter: Supporter) -> bool:
        return self._transition(supporter, MembershipStatus.PAST_DUE)

    def mark_cancelled(self, supporter: Supporter) -> bool:
        return self._transition(supporter, MembershipStatus.CANCELLED)

    def _transition(self, supporter: Supporter, status: MembershipStatus) -> bool:
        membership = self.get(supporter)
        if membership is None:
            logger.info(
                "No membership to mark %s",
                status.value,
                extra={"supporter_id": supporter.id},
            )
            return False
        membership.status = status
        logger.info("Membership marked %s", status.value, extra={"supporter_id": supporter.id})
        return True
