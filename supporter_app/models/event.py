"""
Supporter activity ledger and the ticketing product-meaning lookup.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db, utcnow


class SourceSystem(str, enum.Enum):
    SHOPIFY = "shopify"
    FUTURE_TICKETING = "futureticketing"
    STRIPE = "stripe"
    GOCARDLESS = "gocardless"
    MAILCHIMP = "mailchimp"


class EventType(str, enum.Enum):
    TICKET_PURCHASE = "TicketPurchase"
    STADIUM_ENTRY = "StadiumEntry"
    SHOP_ORDER = "ShopOrder"
    MEMBERSHIP_EVENT = "MembershipEvent"
    PAYMENT_EVENT = "PaymentEvent"
    EMAIL_CLICK = "EmailClick"


class ProductMeaning(str, enum.Enum):
    SEASON_TICKET = "SeasonTicket"
    AWAY_SUPPORTER = "AwaySupporter"
    HOME_TICKET = "HomeTicket"
    OTHER = "Other"


DEFAULT_CURRENCY = "EUR"


class Event(BaseModel):
    """
    Immutable record of one thing a supporter did in an external system.

    ``(source_system, external_id)`` is the idempotency key shared by live
    ingestion and reconciliation.
    """

    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    supporter_id: Mapped[str] = mapped_column(
        ForeignKey("supporters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_system: Mapped[str] = mapped_column(db.String(32), nullable=False)
    event_type: Mapped[EventType] = mapped_column(Enum(EventType, name="event_type_enum"), nullable=False, index=True)
    event_time: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(db.Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(db.String(3), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", db.JSON, nullable=True)
    raw_payload_ref: Mapped[str | None] = mapped_column(db.String(512), nullable=True)

    __table_args__ = (
        UniqueConstraint("source_system", "external_id", name="uq_events_source_external_id"),
        Index("idx_events_supporter_time", "supporter_id", "event_time"),
    )

    @property
    def product_meanings(self) -> list[str]:
        meanings = (self.metadata_json or {}).get("product_meanings") or []
        return [str(meaning) for meaning in meanings]

    def __repr__(self):
        return f"<Event {self.source_system}:{self.external_id}>"


class ProductMapping(BaseModel):
    """Maps a ticketing product or category id to a product meaning from a given date."""

    __tablename__ = "product_mappings"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    category_id: Mapped[str | None] = mapped_column(db.String(100), nullable=True, index=True)
    meaning: Mapped[str] = mapped_column(db.String(100), nullable=False)
    effective_from: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    def __repr__(self):
        return f"<ProductMapping product={self.product_id} category={self.category_id} {self.meaning}>"
