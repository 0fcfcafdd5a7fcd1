"""
Supporter ingestion feature package.

Provides conditional blueprint, CLI and Celery registration along with source
registry validation while staying inert when ingestion is disabled.
"""

from __future__ import annotations

from typing import Any, Iterable, Tuple

from flask import Flask

from supporter_app.utils.ingestion import get_ingestion_sources, is_ingestion_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_ingestion_group, ingestion_cli
from .registry import SourceDescriptor, get_source_registry, missing_settings, resolve_sources
from .views import ingestion_blueprint

INGESTION_EXTENSION_KEY = "ingestion"

__all__ = [
    "init_ingestion",
    "INGESTION_EXTENSION_KEY",
    "get_celery_app",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        INGESTION_EXTENSION_KEY,
        {
            "enabled": False,
            "configured_sources": (),
            "active_sources": (),
            "missing_settings": {},
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = ingestion_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(ingestion_cli)
    else:
        app.cli.add_command(get_disabled_ingestion_group())


def init_ingestion(app: Flask) -> None:
    """
    Conditionally mount the ingestion blueprint, CLI and Celery app.

    State is kept in ``app.extensions['ingestion']`` for the CLI, views and
    worker helpers.
    """
    enabled = is_ingestion_enabled(app)
    configured_sources: Tuple[str, ...] = get_ingestion_sources(app)

    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "configured_sources": configured_sources,
            "worker_enabled": bool(app.config.get("INGESTION_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        state["active_sources"] = ()
        state["missing_settings"] = {}
        _set_cli(app, enabled=False)
        app.logger.info("Ingestion disabled via INGESTION_ENABLED flag; skipping registration.")
        return

    active: Iterable[SourceDescriptor] = resolve_sources(configured_sources, get_source_registry())
    state["active_sources"] = tuple(active)
    state["missing_settings"] = {}
    for descriptor in state["active_sources"]:
        missing = missing_settings(descriptor, app.config)
        state["missing_settings"][descriptor.name] = missing
        if missing:
            app.logger.warning(
                "Ingestion source '%s' is missing settings: %s",
                descriptor.name,
                ", ".join(missing),
                extra={"ingestion_source": descriptor.name, "ingestion_missing_settings": missing},
            )

    ensure_celery_app(app, state)

    if ingestion_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(ingestion_blueprint)
    elif ingestion_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Ingestion blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    source_names = ", ".join(source.name for source in state["active_sources"]) or "none"
    app.logger.info("Ingestion enabled with sources: %s", source_names)
