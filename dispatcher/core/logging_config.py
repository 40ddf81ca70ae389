"""
Centralized logging configuration for the dispatch service.
Provides structured JSON logging with event context (kind, id) and a plain text fallback.
"""
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Attributes every LogRecord carries; anything else arrived through `extra=` and is event context.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()) | {
    "message",
    "asctime",
}

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JSONFormatter(logging.Formatter):
    """
    Renders each record as one JSON object per line.

    Keys passed through ``extra`` (``event_kind``, ``event_id``, ``queue``...) are
    copied to the top level so log sinks can filter on them.
    """

    def __init__(self, service: str = "nextecom-consumers"):
        super().__init__()
        self.service = service

    def _create_log_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "service": self.service,
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            log_entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        return log_entry

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self._create_log_entry(record), default=str)


def setup_logging(
    level: str = "INFO",
    log_format: Optional[str] = None,
    service: str = "nextecom-consumers"
) -> None:
    """
    Configure process-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" for structured output, anything else for the text format
        service: Service name stamped on JSON log lines
    """
    handler = logging.StreamHandler(sys.stdout)
    if (log_format or "json").lower() == "json":
        handler.setFormatter(JSONFormatter(service=service))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Set specific log levels for noisy libraries
    for noisy in ("aio_pika", "aiormq", "uvicorn.access", "sqlalchemy"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
