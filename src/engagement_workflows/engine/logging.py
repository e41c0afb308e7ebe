"""JSON log lines for the engine, the CLI and the API server.

Context goes through ``extra={...}``. A ``workflow_instance_id`` in that context
is lifted to the top level so every line of one engagement can be grepped.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

# Whatever a bare record carries is plumbing, not context.
_BASE_RECORD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

_CORRELATION_KEY = "workflow_instance_id"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        line: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _BASE_RECORD_ATTRS and not key.startswith("_")
        }
        if _CORRELATION_KEY in context:
            line[_CORRELATION_KEY] = context.pop(_CORRELATION_KEY)
        if context:
            line["extra"] = context
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)

        # Event payloads may hold datetimes or enums.
        return json.dumps(line, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: IO[str] | None = None) -> None:
    """Route root logging to one JSON handler (stdout unless ``stream`` is given).

    The CLI passes stderr so its stdout stays a single JSON document.
    """

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    logging.getLogger("uvicorn.access").setLevel(max(root.level, logging.WARNING))
