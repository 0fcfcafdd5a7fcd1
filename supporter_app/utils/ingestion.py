"""
Utility helpers for ingestion feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_ingestion_enabled(app=None) -> bool:
    """Return True when the ingestion feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("INGESTION_ENABLED", False))


def get_ingestion_sources(app=None) -> Tuple[str, ...]:
    """Return the configured source system identifiers."""
    config = _get_config(app)
    sources: Iterable[str] = config.get("INGESTION_SOURCES", ())
    return tuple(sources)


def is_source_enabled(source_system: str, app=None) -> bool:
    return source_system in get_ingestion_sources(app)
