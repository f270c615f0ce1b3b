"""Logging for the relay: one JSON object per line, or plain text for local runs."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s %(context)s"

# Chatty below WARNING; sqlalchemy.engine echoes every statement at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """One JSON object per record; sender_id is lifted out of the context so it can be grepped."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            context = dict(context)
            sender_id = context.pop("sender_id", None)
            if sender_id is not None:
                log_data["sender_id"] = sender_id
            if context:
                log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        context = getattr(record, "context", None)
        record.context = json.dumps(context, ensure_ascii=False, default=str) if context else ""
        try:
            return super().format(record).rstrip()
        finally:
            record.context = context


def setup_logging(level: str = "INFO", log_format: str = "json") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TextFormatter() if log_format.lower() == "text" else JSONFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"turnrelay.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """
    Binds a fixed context (usually the sender) to every record.

    Per-call context may come either as extra={"context": {...}} or as a
    context= keyword; both are merged over the bound context.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.get("extra") or {}
        context = {**self.extra, **(extra.get("context") or {}), **(kwargs.pop("context", None) or {})}
        if context:
            kwargs["extra"] = {**extra, "context": context}
        return msg, kwargs
