"""
Ticketing product-meaning lookup and YAML seeding.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import yaml
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from supporter_app.ingestion.utils import clean_str, parse_timestamp, utcnow
from supporter_app.models import ProductMapping, ProductMeaning, db


def normalize_meaning(raw: object | None) -> ProductMeaning:
    """Map free-text mapping labels ("Away Supporter", "season ticket") onto the enum."""

    text = (clean_str(raw) or "").lower()
    for meaning in ProductMeaning:
        if text == meaning.value.lower():
            return meaning
    if "away" in text and "supporter" in text:
        return ProductMeaning.AWAY_SUPPORTER
    if "season" in text and "ticket" in text:
        return ProductMeaning.SEASON_TICKET
    if "home" in text and "ticket" in text:
        return ProductMeaning.HOME_TICKET
    return ProductMeaning.OTHER


class ProductMeaningResolver:
    """Resolve line items to meanings; mappings effective in the future are ignored."""

    def __init__(self, session: Session | None = None, *, now_fn: Callable[[], datetime] = utcnow):
        self.session = session or db.session
        self.now_fn = now_fn
        self._cache: dict[tuple[str | None, str | None], ProductMeaning | None] = {}

    def lookup(self, product_id: object | None, category_id: object | None = None) -> ProductMeaning | None:
        product = clean_str(product_id)
        category = clean_str(category_id)
        if product is None and category is None:
            return None
        cache_key = (product, category)
        if cache_key in self._cache:
            return self._cache[cache_key]

        clauses = []
        if product is not None:
            clauses.append(ProductMapping.product_id == product)
        if category is not None:
            clauses.append(ProductMapping.category_id == category)
        stmt = (
            select(ProductMapping)
            .where(or_(*clauses), ProductMapping.effective_from <= self.now_fn())
            .order_by(ProductMapping.effective_from.desc(), ProductMapping.id.desc())
            .limit(1)
        )
        mapping = self.session.scalar(stmt)
        meaning = normalize_meaning(mapping.meaning) if mapping is not None else None
        self._cache[cache_key] = meaning
        return meaning

    def meanings_for_items(self, items: Iterable[Mapping[str, Any]]) -> list[str]:
        """Distinct meanings in item order; unmapped items contribute nothing."""

        meanings: list[str] = []
        for item in items:
            meaning = self.lookup(
                item.get("ProductID", item.get("product_id")),
                item.get("CategoryID", item.get("category_id")),
            )
            if meaning is not None and meaning.value not in meanings:
                meanings.append(meaning.value)
        return meanings


@dataclass
class MappingLoadSummary:
    rows_seen: int = 0
    rows_created: int = 0
    rows_skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "rows_seen": self.rows_seen,
            "rows_created": self.rows_created,
            "rows_skipped": self.rows_skipped,
        }


def load_product_mappings(path: str | Path, *, session: Session | None = None) -> MappingLoadSummary:
    """
    Seed ``product_mappings`` from a YAML file of the form::

        mappings:
          - product_id: "ST-2025"
            meaning: SeasonTicket
            effective_from: 2025-01-01

    Rows already present (same ids, meaning and effective date) are skipped.
    The caller owns the commit.
    """

    session = session or db.session
    with Path(path).open("r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}
    rows = document.get("mappings", []) if isinstance(document, dict) else []
    if not isinstance(rows, list):
        raise ValueError("Product mapping file must contain a 'mappings' list")

    summary = MappingLoadSummary()
    for row in rows:
        summary.rows_seen += 1
        if not isinstance(row, dict):
            raise ValueError(f"Product mapping row {summary.rows_seen} is not a mapping")
        product_id = clean_str(row.get("product_id"))
        category_id = clean_str(row.get("category_id"))
        if product_id is None and category_id is None:
            raise ValueError(f"Product mapping row {summary.rows_seen} needs product_id or category_id")
        meaning = normalize_meaning(row.get("meaning")).value
        effective_from = parse_timestamp(row.get("effective_from"), default=None) or datetime(
            1970, 1, 1, tzinfo=utcnow().tzinfo
        )
        existing = session.scalar(
            select(ProductMapping).where(
                ProductMapping.product_id.is_(None) if product_id is None else ProductMapping.product_id == product_id,
                ProductMapping.category_id.is_(None) if category_id is None else ProductMapping.category_id == category_id,
                ProductMapping.meaning == meaning,
                ProductMapping.effective_from == effective_from,
            )
        )
        if existing is not None:
            summary.rows_skipped += 1
            continue
        session.add(
            ProductMapping(
                product_id=product_id,
                category_id=category_id,
                meaning=meaning,
                effective_from=effective_from,
                notes=clean_str(row.get("notes")),
            )
        )
        summary.rows_created += 1
    session.flush()
    return summary
