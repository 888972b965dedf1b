"""JSON logging configuration for the LeadPilot API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# lifted out of ``context`` so log search can filter on them directly
TOP_LEVEL_KEYS = ("conversation_id", "idempotency_key")


class JSONFormatter(logging.Formatter):
    """One JSON object per line; conversation identifiers at the top level."""

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
            for key in TOP_LEVEL_KEYS:
                if key in context:
                    log_data[key] = context.pop(key)
            if context:
                log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"leadpilot.{name}")


class ConversationLogger(logging.LoggerAdapter):
    """Adapter that stamps every record with the conversation it belongs to.

    Per-call context passed as ``context={...}`` is merged over the bound one.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs


def bind_conversation(logger: logging.Logger, conversation_id, **extra: Any) -> ConversationLogger:
    return ConversationLogger(logger, {"conversation_id": str(conversation_id), **extra})
