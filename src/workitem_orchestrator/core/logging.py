"""JSON log output for orchestration runs.

Every record becomes one JSON object per line on stderr, so stdout stays free for
CLI results. Context such as ``work_item_id`` or ``execution_id`` is attached with
``extra={...}`` at the call site and shows up under the ``extra`` key.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("openai", "httpx", "httpcore")


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extra = _extra_fields(record)
        if extra:
            entry["extra"] = extra
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Route the root logger through :class:`JsonFormatter` at ``level``.

    Safe to call more than once; earlier handlers are replaced.
    """

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # The LLM SDK logs every HTTP request at DEBUG.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.INFO))
