"""Structured logging for agendabot.

Every record is a single JSON line. Call sites attach structured fields through
``extra={"context": {...}}``; job workers use :func:`bind_logger` so the job id,
company and subject travel with every line of an attempt.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

NAMESPACE = "agendabot"

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    """Human readable lines for local runs; context is appended as key=value."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


def setup_logging(level: str = "INFO", fmt: str = "json") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TextFormatter() if fmt == "text" else JSONFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{NAMESPACE}.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Merges bound fields with any per-call ``context=`` keyword."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context: Optional[dict] = kwargs.pop("context", None)
        merged = {**self.extra, **(context or {})}
        if merged:
            kwargs["extra"] = {"context": merged}
        return msg, kwargs


def bind_logger(logger: logging.Logger, **fields: Any) -> LoggerAdapter:
    return LoggerAdapter(logger, fields)
