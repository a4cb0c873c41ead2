import json
import logging
import os
from typing import Any, Dict, Optional

from .observability import get_structured_logger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").lower()  # json | plain

_CONTEXT_FIELDS = ("request_id", "provider_id", "target")
# Attributes every LogRecord has; anything else came in through extra=
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class JsonFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message, correlation fields, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, "-")
            if value != "-":
                entry[field] = value
        entry.update(
            (key, _json_safe(val))
            for key, val in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in _CONTEXT_FIELDS
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, separators=(",", ":"))


def _configure_root_logger(level: str) -> logging.Logger:
    logger = logging.getLogger()
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_FORMAT == "plain":
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s %(levelname)s %(name)s [%(provider_id)s@%(target)s] %(message)s",
                    defaults={field: "-" for field in _CONTEXT_FIELDS},
                )
            )
        else:
            handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    # aiohttp is chatty on reconnect loops
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    return logger


root_logger = _configure_root_logger(LOG_LEVEL)


# PUBLIC_INTERFACE
def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Module logger with correlation context attached."""
    return get_structured_logger(name or __name__)
