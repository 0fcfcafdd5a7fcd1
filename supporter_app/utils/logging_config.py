"""
Application logging setup driven by ``MonitoringConfig``.

``LOG_FORMAT=json`` emits one JSON object per line, including any ``extra``
fields passed to the logger; ``text`` is the human readable variant used in
development.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from flask import Flask

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__.keys() | {"message", "asctime"}
)


class JSONFormatter(logging.Formatter):
    def __init__(self, app_name: str | None = None, app_version: str | None = None):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.app_version:
            payload["version"] = self.app_version
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(app: Flask) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME"), app.config.get("APP_VERSION"))
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app: Flask) -> None:
    """Attach console/file handlers to the root logger and the Flask app logger."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)
    root = logging.getLogger()

    for handler in list(root.handlers):
        if getattr(handler, "_supporter_app_handler", False):
            root.removeHandler(handler)

    handlers: list[logging.Handler] = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())
    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                os.path.join(log_dir, "supporter360.log"),
                maxBytes=app.config.get("LOG_FILE_MAX_BYTES", 10485760),
                backupCount=app.config.get("LOG_FILE_BACKUP_COUNT", 10),
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        handler._supporter_app_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(level)
    app.logger.setLevel(level)
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))
