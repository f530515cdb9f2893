"""Structured logs for the ordering bot.

Every record is written to stdout as a single JSON line. Conversation code
passes identifiers through ``extra={"context": {...}}`` so a line can be
tied back to one tenant and one customer without parsing the message text.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_PREFIX = "orderbot"

# Chatty third-party loggers kept at WARNING regardless of LOG_LEVEL.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``context`` and tracebacks are added when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # totals and timestamps in context are Decimal/datetime
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Install the JSON handler on the root logger, replacing any existing ones."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``orderbot.`` namespace, e.g. ``orderbot.order_machine``."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Stamp tenant_id/customer_key onto every record logged while handling one message.

    Per-call ``extra={"context": ...}`` keys are merged over the bound ones.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.pop("extra", None) or {}
        context = {**self.extra, **(extra.get("context") or {})}
        kwargs["extra"] = {**extra, "context": context}
        return msg, kwargs
