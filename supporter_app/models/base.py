# supporter_app/models/base.py
"""
Shared SQLAlchemy handle and declarative base for all models.
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseModel(db.Model):
    """Abstract base adding creation/update timestamps."""

    __abstract__ = True

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
