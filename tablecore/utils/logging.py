"""
Structured logging utilities for tablecore.

The record engine reports batch progress through standard library logging,
carrying request context (``table``, ``operation``, ``index``, ``service``,
``relation``) in ``extra=``. The console formatter keeps lines short; the
JSON formatter flattens that context into top-level keys for log pipelines.

Usage:
    from tablecore.utils.logging import configure_logging, get_logger

    configure_logging(level="INFO", json_logs=True, service="db")
    log = get_logger(__name__)
    log.info("batch committed", extra={"table": "orders", "operation": "create"})
"""

from __future__ import annotations

import json
import logging
import logging.config
from typing import Any, Dict, Optional

# attributes every LogRecord carries; anything else arrived through `extra=`
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

_QUIET_LOGGERS = ("httpx", "httpcore", "psycopg.pool")


def _json_formatter(record: logging.LogRecord) -> str:
    """Render a log record as a JSON object with its context promoted."""
    payload: Dict[str, Any] = {
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
    }
    context = {key: value for key, value in vars(record).items() if key not in _STANDARD_ATTRS}
    nested = context.pop("extra", None)
    payload.update(context)
    if isinstance(nested, dict):
        payload.update(nested)
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    if record.stack_info:
        payload["stack_info"] = record.stack_info
    return json.dumps(payload, default=str)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


class ServiceContextFilter(logging.Filter):
    """Stamp the owning service name on records that do not name one."""

    def __init__(self, service: Optional[str] = None) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        if self.service and not hasattr(record, "service"):
            record.service = self.service
        return True


def _logging_config(level: str, json_logs: bool, service: Optional[str]) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {"()": JsonFormatter},
        },
        "filters": {
            "service": {"()": ServiceContextFilter, "service": service},
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json_logs else "console",
                "filters": ["service"],
                "level": level,
            }
        },
        "root": {"handlers": ["default"], "level": level},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    }


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    service: Optional[str] = None,
    force: bool = True,
) -> None:
    """
    Configure root logging.

    Parameters
    ----------
    level : str
        Logging level name (e.g., "DEBUG", "INFO", "WARNING").
    json_logs : bool
        Emit logs as JSON instead of the console format.
    service : str | None
        Service name stamped on records that carry no ``service`` of their own.
    force : bool
        Replace an existing configuration. When False and the root logger
        already has handlers, nothing is changed.
    """
    if not force and logging.getLogger().handlers:
        return
    logging.config.dictConfig(_logging_config(level, json_logs, service))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter", "ServiceContextFilter"]
