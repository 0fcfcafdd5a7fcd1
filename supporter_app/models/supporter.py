"""
Canonical supporter identity plus the email aliases that point at it.
"""

from __future__ import annotations

import enum
import uuid
from typing import Any

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class SupporterType(str, enum.Enum):
    """Engagement category derived by the classifier (or set by an admin)."""

    MEMBER = "Member"
    SEASON_TICKET_HOLDER = "Season Ticket Holder"
    TICKET_BUYER = "Ticket Buyer"
    SHOP_BUYER = "Shop Buyer"
    AWAY_SUPPORTER = "Away Supporter"
    STAFF_VIP = "Staff/VIP"
    UNKNOWN = "Unknown"


class SupporterTypeSource(str, enum.Enum):
    AUTO = "auto"
    ADMIN_OVERRIDE = "admin_override"


FLAG_SHARED_EMAIL = "shared_email"


def _new_id() -> str:
    return str(uuid.uuid4())


class Supporter(BaseModel):
    """One person (or organisation) interacting with the club."""

    __tablename__ = "supporters"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=_new_id)
    name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    primary_email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True, index=True)
    supporter_type: Mapped[SupporterType] = mapped_column(
        Enum(SupporterType, name="supporter_type_enum"),
        nullable=False,
        default=SupporterType.UNKNOWN,
        index=True,
    )
    supporter_type_source: Mapped[SupporterTypeSource] = mapped_column(
        Enum(SupporterTypeSource, name="supporter_type_source_enum"),
        nullable=False,
        default=SupporterTypeSource.AUTO,
    )
    flags: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    linked_ids: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)

    @property
    def is_admin_override(self) -> bool:
        return self.supporter_type_source == SupporterTypeSource.ADMIN_OVERRIDE

    def has_flag(self, name: str) -> bool:
        return bool((self.flags or {}).get(name))

    def set_flag(self, name: str, value: bool = True) -> None:
        # Reassign so SQLAlchemy notices the JSON change.
        self.flags = {**(self.flags or {}), name: value}

    def linked_id(self, system: str) -> str | None:
        value = (self.linked_ids or {}).get(system)
        return str(value) if value not in (None, "") else None

    def attach_linked_id(self, system: str, external_id: str) -> bool:
        """
        Record ``linked_ids[system] = external_id`` if the slot is empty.

        Returns True when the mapping was written. An existing id for the same
        system is never replaced.
        """

        if self.linked_id(system) is not None:
            return False
        self.linked_ids = {**(self.linked_ids or {}), system: str(external_id)}
        return True

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "primary_email": self.primary_email,
            "phone": self.phone,
            "supporter_type": self.supporter_type.value if self.supporter_type else None,
            "supporter_type_source": self.supporter_type_source.value if self.supporter_type_source else None,
            "flags": dict(self.flags or {}),
            "linked_ids": dict(self.linked_ids or {}),
        }

    def __repr__(self):
        return f"<Supporter {self.id} {self.primary_email or '-'}>"


class EmailAlias(BaseModel):
    """Additional email owned by a supporter; ``is_shared`` marks household/staff addresses."""

    __tablename__ = "email_aliases"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False)
    supporter_id: Mapped[str] = mapped_column(
        ForeignKey("supporters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_shared: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("email", "supporter_id", name="uq_email_alias_supporter"),
        Index("idx_email_alias_email", "email"),
    )

    def __repr__(self):
        return f"<EmailAlias {self.email} -> {self.supporter_id}>"
