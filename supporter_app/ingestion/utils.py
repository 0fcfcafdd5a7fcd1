"""
Normalisation helpers shared by payload mappers and jobs.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

_NON_DIGITS = re.compile(r"[^\d]")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim; blank values become None."""

    if value is None:
        return None
    token = str(value).strip().lower()
    return token or None


def normalize_phone(value: object | None) -> str | None:
    """Strip formatting characters, keeping a leading '+' when present."""

    if value is None:
        return None
    token = str(value).strip()
    if not token:
        return None
    digits = _NON_DIGITS.sub("", token)
    if not digits:
        return None
    return f"+{digits}" if token.startswith("+") else digits


def clean_str(value: object | None) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def join_name(*parts: object | None) -> str | None:
    tokens = [str(part).strip() for part in parts if part not in (None, "") and str(part).strip()]
    return " ".join(tokens) or None


def parse_timestamp(value: Any, *, default: datetime | None = None) -> datetime | None:
    """
    Parse ISO strings, epoch seconds or datetimes into aware UTC datetimes.

    Unparseable values return ``default``.
    """

    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default
    token = str(value).strip()
    if token.endswith("Z"):
        token = token[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(token))
    except ValueError:
        return default


def parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_timestamp(value)
    if parsed is not None:
        return parsed.date()
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def minor_units_to_decimal(value: Any) -> Decimal | None:
    """Convert an integer amount in cents to a two-place Decimal."""

    amount = to_decimal(value)
    if amount is None:
        return None
    return (amount / Decimal(100)).quantize(Decimal("0.01"))


def upper_currency(value: Any, default: str) -> str:
    token = clean_str(value)
    return token.upper() if token else default
