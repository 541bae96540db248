"""
Logging setup driven by the monitoring config classes.

``LOG_FORMAT=json`` emits one JSON object per line including any structured
``extra`` fields (``importer_run_id`` and friends); ``text`` is meant for
local development.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Render records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(log_format: str) -> logging.Formatter:
    if (log_format or "").lower() == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app) -> None:
    """Attach console and rotating-file handlers to the app and importer loggers."""

    config = app.config
    level = getattr(logging, str(config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(config.get("LOG_FORMAT", "text"))

    handlers: list[logging.Handler] = []
    if config.get("ENABLE_CONSOLE_LOGGING", True):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        handlers.append(console)

    if config.get("ENABLE_FILE_LOGGING", False):
        log_dir = config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "migrator.log"),
            maxBytes=int(config.get("LOG_FILE_MAX_BYTES", 10 * 1024 * 1024)),
            backupCount=int(config.get("LOG_FILE_BACKUP_COUNT", 10)),
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for logger in (app.logger, logging.getLogger("migrator_app")):
        logger.setLevel(level)
        for handler in list(logger.handlers):
            if getattr(handler, "_migrator_handler", False):
                logger.removeHandler(handler)
        for handler in handlers:
            handler._migrator_handler = True  # type: ignore[attr-defined]
            logger.addHandler(handler)
        if logger is not app.logger:
            logger.propagate = not handlers

    app.logger.debug("Logging configured (level=%s, format=%s)", logging.getLevelName(level), config.get("LOG_FORMAT"))
