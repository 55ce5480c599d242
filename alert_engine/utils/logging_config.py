"""
Logging setup for the alert engine.

Every module logs through one of a fixed set of named loggers under the
``alert_engine.`` namespace and passes its context in ``extra={...}``:

- api: HTTP endpoints and exception handlers
- services: Preferences, ledger, evaluator, consumer, delivery job service
- db: Database errors
- websocket: Connection gateway and cross-process push broker
- delivery: Dispatcher, email worker, mail transport

Production (ALERT_ENGINE_ENV=production) writes one rotating JSON-lines file
per logger. Anywhere else, records go to stdout in a readable form with the
extra context appended as key=value pairs.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from alert_engine.config.settings import AppSettings, get_settings


LOGGER_NAMES = ("api", "services", "db", "websocket", "delivery")

# 10MB per file, 5 rotations
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

# Attributes present on every LogRecord; anything else came from extra={...}
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def record_context(record: logging.LogRecord) -> Dict[str, object]:
    """Return the fields a call site attached with extra={...}."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line, context fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(record_context(record))
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Readable single-line records for development.

    Example:
        [2026-10-15 12:00:00] INFO alert_engine.delivery - Email delivered job=dlv_01j... attempts=1
    """

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def _build_handler(name: str, settings: AppSettings, level: int) -> logging.Handler:
    if settings.is_production:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{name}.log",
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ConsoleFormatter())
    handler.setLevel(level)
    return handler


def configure_logging(settings: Optional[AppSettings] = None) -> Dict[str, logging.Logger]:
    """
    (Re)build the handlers of every engine logger.

    Args:
        settings: Application settings (default: cached settings)

    Returns:
        Logger name -> configured Logger
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    loggers = {}
    for name in LOGGER_NAMES:
        logger = logging.getLogger(f"alert_engine.{name}")
        logger.setLevel(level)
        logger.propagate = False
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.addHandler(_build_handler(name, settings, level))
        loggers[name] = logger
    return loggers


_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get one of the engine loggers, configuring logging on first use.

    Raises:
        ValueError: If name is not one of LOGGER_NAMES
    """
    global _loggers
    if name not in LOGGER_NAMES:
        raise ValueError(
            f"Unknown logger name: {name}. Valid names: {', '.join(LOGGER_NAMES)}"
        )
    if _loggers is None:
        _loggers = configure_logging()
    return _loggers[name]


def init_logging(settings: Optional[AppSettings] = None) -> Dict[str, logging.Logger]:
    """Configure logging at application startup."""
    global _loggers
    _loggers = configure_logging(settings)
    return _loggers
