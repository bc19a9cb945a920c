from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import IO, Any

from tracebridge.logging_context import CONTEXT_FIELDS, get_logging_context
from tracebridge.security.redaction import redact_data

# transports that log every request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Every transition context field is present (``null`` outside a transition)
    so log pipelines can index on them; an explicit ``extra`` value wins over
    the context.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        context = get_logging_context()
        for field in CONTEXT_FIELDS:
            payload.setdefault(field, context.get(field))

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            payload["error_type"] = type(error).__name__
            payload["error_message"] = str(error)
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(redact_data(payload), default=str)


def setup_logging(level: str | int = "INFO", *, stream: IO[str] | None = None) -> None:
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)

    transport_level = logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)
