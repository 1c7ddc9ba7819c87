"""JSON logging for the engine.

Every record is one JSON object per line. Engine call sites pass run
identity through `extra=`; those keys (`run_id`, `workflow_id`, `step_id`,
`branch`) are lifted to the top level so a run can be followed with a plain
filter, and anything else passed through `extra=` lands under `extra`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

RUN_FIELDS: tuple[str, ...] = ("run_id", "workflow_id", "step_id", "branch")

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

_QUIET_LOGGERS: tuple[str, ...] = ("urllib3", "uvicorn.access", "httpx")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        }
        for key in RUN_FIELDS:
            if key in fields:
                payload[key] = fields.pop(key)
        if fields:
            payload["extra"] = fields

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Send all records to stdout as JSON at `level`."""

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))
