"""
Append-only audit log and durable key/value job configuration.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db, utcnow

SYSTEM_ACTOR = "system"


class AuditLog(BaseModel):
    """State-changing decision made by an operator or a scheduled job."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(db.String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(db.String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    before_state: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    after_state: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (
        Index("idx_audit_log_action_time", "action_type", "timestamp"),
        CheckConstraint("action_type <> ''", name="ck_audit_log_action_non_empty"),
    )

    @classmethod
    def record(
        cls,
        session,
        *,
        actor: str,
        action_type: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        reason: str | None,
    ) -> "AuditLog":
        entry = cls(
            actor=actor,
            action_type=action_type,
            before_state=before,
            after_state=after,
            reason=reason,
        )
        session.add(entry)
        return entry


class ConfigEntry(BaseModel):
    """Runtime setting read by scheduled jobs (windows, checkpoints, last-run stamps)."""

    __tablename__ = "config_entries"

    key: Mapped[str] = mapped_column(db.String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(db.JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    def __repr__(self):
        return f"<ConfigEntry {self.key}>"
