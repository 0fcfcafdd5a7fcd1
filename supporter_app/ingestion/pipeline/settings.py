"""
Durable job configuration backed by ``config_entries``.

Scheduled jobs load an immutable settings object once at the start of each run
so the whole run sees one consistent set of windows and checkpoints.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from supporter_app.ingestion.utils import parse_timestamp, utcnow
from supporter_app.models import ConfigEntry, db

logger = logging.getLogger(__name__)

KEY_GRACE_DAYS = "grace_days"
KEY_TICKET_LOOKBACK_DAYS = "ticket_lookback_days"
KEY_SHOP_LOOKBACK_DAYS = "shop_lookback_days"
KEY_AWAY_LOOKBACK_DAYS = "away_lookback_days"
KEY_RECONCILIATION_LOOKBACK_HOURS = "reconciliation_lookback_hours"
KEY_RECONCILIATION_LAST_RUN = "reconciliation_last_run"
KEY_CLASSIFIER_LAST_RUN = "supporter_type_last_run"
KEY_TAG_SYNC_LAST_RUN = "mailchimp_sync_last_run"
KEY_FT_POLL_CHECKPOINT = "last_ft_poll_checkpoint"


class ConfigStore:
    """Read/write helper over the key/value config table."""

    def __init__(self, session: Session | None = None):
        self.session = session or db.session

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.session.get(ConfigEntry, key)
        if entry is None or entry.value is None:
            return default
        return entry.value

    def get_int(self, key: str, default: int, *, minimum: int = 0) -> int:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("Config value for %s is not an integer; using default", key, extra={"config_key": key})
            return default
        return max(value, minimum)

    def set(self, key: str, value: Any, *, description: str | None = None) -> ConfigEntry:
        """Upsert ``key``; the caller owns the commit."""

        entry = self.session.get(ConfigEntry, key)
        if entry is None:
            entry = ConfigEntry(key=key, value=value, description=description)
            self.session.add(entry)
        else:
            entry.value = value
            if description:
                entry.description = description
        return entry

    def stamp(self, key: str, *, at: datetime | None = None, description: str | None = None) -> str:
        stamp = (at or utcnow()).isoformat()
        self.set(key, stamp, description=description)
        return stamp


@dataclass(frozen=True)
class ClassifierSettings:
    grace_days: int = 7
    ticket_lookback_days: int = 365
    shop_lookback_days: int = 365
    away_lookback_days: int = 365

    @classmethod
    def load(cls, store: ConfigStore) -> "ClassifierSettings":
        defaults = cls()
        return cls(
            grace_days=store.get_int(KEY_GRACE_DAYS, defaults.grace_days),
            ticket_lookback_days=store.get_int(KEY_TICKET_LOOKBACK_DAYS, defaults.ticket_lookback_days),
            shop_lookback_days=store.get_int(KEY_SHOP_LOOKBACK_DAYS, defaults.shop_lookback_days),
            away_lookback_days=store.get_int(KEY_AWAY_LOOKBACK_DAYS, defaults.away_lookback_days),
        )


@dataclass(frozen=True)
class ReconciliationSettings:
    lookback_hours: int = 24

    @classmethod
    def load(cls, store: ConfigStore) -> "ReconciliationSettings":
        return cls(lookback_hours=store.get_int(KEY_RECONCILIATION_LOOKBACK_HOURS, cls.lookback_hours, minimum=1))


@dataclass(frozen=True)
class FTPollCheckpoint:
    """Per-entity high-water marks for the Future Ticketing poller."""

    last_customer_fetch: datetime | None = None
    last_order_fetch: datetime | None = None
    last_entry_fetch: datetime | None = None

    @classmethod
    def load(cls, store: ConfigStore) -> "FTPollCheckpoint":
        raw = store.get(KEY_FT_POLL_CHECKPOINT) or {}
        if not isinstance(raw, dict):
            return cls()
        return cls(
            last_customer_fetch=parse_timestamp(raw.get("last_customer_fetch")),
            last_order_fetch=parse_timestamp(raw.get("last_order_fetch")),
            last_entry_fetch=parse_timestamp(raw.get("last_entry_fetch")),
        )

    def save(self, store: ConfigStore) -> None:
        payload = {key: value.isoformat() if value else None for key, value in asdict(self).items()}
        store.set(KEY_FT_POLL_CHECKPOINT, payload, description="Future Ticketing poll checkpoints")
