"""Centralized logging setup and JSON formatter for structured logging."""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict

# Attributes every LogRecord carries; anything else came in via ``extra=``.
_RECORD_ATTRS = {
    "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno",
    "funcName", "created", "msecs", "relativeCreated", "thread",
    "threadName", "processName", "process", "name", "message",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Merges any `extra=` kwargs directly into the payload, so batch runs can
    be filtered by file or vesicle in log aggregation systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        for key, value in getattr(record, "__dict__", {}).items():
            if key not in _RECORD_ATTRS:
                payload[key] = value

        # safe fallback for non-serializable objects
        return json.dumps(payload, default=str)


def configure_logging(level: int = logging.WARNING, json_format: bool = False) -> None:
    """Attach a single stderr handler to the ``mbdr`` logger.

    Called by the CLI only; library modules never configure handlers.

    Args:
        level:       Threshold for the ``mbdr`` logger.
        json_format: Use :class:`JsonFormatter` instead of plain text.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
        )

    logger = logging.getLogger("mbdr")
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
