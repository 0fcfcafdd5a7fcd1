"""
Paid membership plus email-audience membership tables.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class MembershipTier(str, enum.Enum):
    FULL = "Full"
    OAP = "OAP"
    STUDENT = "Student"
    OVERSEAS = "Overseas"


class MembershipCadence(str, enum.Enum):
    MONTHLY = "Monthly"
    ANNUAL = "Annual"


class MembershipStatus(str, enum.Enum):
    ACTIVE = "Active"
    PAST_DUE = "Past Due"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class BillingMethod(str, enum.Enum):
    GOCARDLESS = "gocardless"
    STRIPE = "stripe"


class Membership(BaseModel):
    """One-to-one paid membership for a supporter."""

    __tablename__ = "memberships"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    supporter_id: Mapped[str] = mapped_column(
        ForeignKey("supporters.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    tier: Mapped[MembershipTier | None] = mapped_column(Enum(MembershipTier, name="membership_tier_enum"), nullable=True)
    cadence: Mapped[MembershipCadence | None] = mapped_column(
        Enum(MembershipCadence, name="membership_cadence_enum"), nullable=True
    )
    billing_method: Mapped[BillingMethod | None] = mapped_column(
        Enum(BillingMethod, name="billing_method_enum"), nullable=True
    )
    status: Mapped[MembershipStatus] = mapped_column(
        Enum(MembershipStatus, name="membership_status_enum"),
        nullable=False,
        default=MembershipStatus.UNKNOWN,
        index=True,
    )
    last_payment_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    next_expected_payment_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)

    def __repr__(self):
        return f"<Membership {self.supporter_id} {self.status.value if self.status else '-'}>"


class AudienceMembership(BaseModel):
    """A supporter's contact record inside one external email audience."""

    __tablename__ = "audience_memberships"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    supporter_id: Mapped[str] = mapped_column(
        ForeignKey("supporters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    audience_id: Mapped[str] = mapped_column(db.String(100), nullable=False)
    audience_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    mailchimp_contact_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    tags: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    last_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (UniqueConstraint("supporter_id", "audience_id", name="uq_audience_membership"),)


class EngagementAggregate(BaseModel):
    """Running email click counter per supporter."""

    __tablename__ = "engagement_aggregates"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    supporter_id: Mapped[str] = mapped_column(
        ForeignKey("supporters.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    click_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_click_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
