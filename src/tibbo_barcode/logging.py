"""Structured logging helpers."""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Dict

from .config import Config

_RESERVED_ATTRS = {
    "name",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "msg",
    "args",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base: Dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            base["stack"] = self.formatStack(record.stack_info)
        for key, value in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED_ATTRS:
                continue
            base[key] = value
        return json.dumps(base, ensure_ascii=False, default=str)


def _logger_entry(level: str) -> Dict[str, Any]:
    return {"level": level, "handlers": ["console"], "propagate": False}


def configure_logging(config: Config) -> None:
    """Configure global logging based on the provided config."""

    level = config.log_level.upper()
    discovery_level = (config.discovery_log_level or config.log_level).upper()
    printer_level = (config.printer_log_level or config.log_level).upper()
    api_level = (config.api_log_level or config.log_level).upper()
    if config.log_format == "json":
        formatter = {
            "format": "json",
            "()": f"{__name__}.JsonFormatter",
        }
    else:
        formatter = {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            "datefmt": "%Y-%m-%dT%H:%M:%S%z",
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": formatter,
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": "DEBUG",
                }
            },
            "loggers": {
                "tibbo": _logger_entry(level),
                "tibbo.discovery": _logger_entry(discovery_level),
                "tibbo.discovery.protocol": _logger_entry(discovery_level),
                "tibbo.reconciler": _logger_entry(level),
                "tibbo.scanner": _logger_entry(level),
                "tibbo.printer": _logger_entry(printer_level),
                "tibbo.labels": _logger_entry(printer_level),
                "tibbo.records": _logger_entry(level),
                "tibbo.db": _logger_entry(level),
                "tibbo.migrations": _logger_entry(level),
                "tibbo.api": _logger_entry(api_level),
                "tibbo.api.middleware": _logger_entry(api_level),
            },
            "root": {"level": level, "handlers": ["console"]},
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger for the requested subsystem."""

    return logging.getLogger(name)
