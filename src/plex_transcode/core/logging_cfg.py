"""Logging configuration utilities.

Provides JSON-friendly logging configuration for the client and the CLI.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

#: Record attributes copied into the payload when a call site passes them via ``extra``.
CONTEXT_FIELDS: tuple[str, ...] = ("session_id", "queue_id", "item_id", "key", "status")


class JsonFormatter(logging.Formatter):
    """A JSON log formatter.

    Notes
    -----
    - Transcode sessions and queue items log their identity through ``extra``
      (see ``CONTEXT_FIELDS``) so lines for one item can be filtered together.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Parameters
        ----------
        record: logging.LogRecord
            The log record to format.

        Returns
        -------
        str
            The formatted JSON log line.
        """

        payload: dict[str, Any] = {
            "level": record.levelname,
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "message": record.getMessage(),
            "name": record.name,
            "function": record.funcName,
            "line": record.lineno,
        }
        for field in CONTEXT_FIELDS:
            value: Any = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(debug: bool) -> None:
    """Initialize logging with JSON formatting.

    Parameters
    ----------
    debug: bool
        Whether to set the root logger to DEBUG level.
    """

    level: int = logging.DEBUG if debug else logging.INFO
    handler: logging.Handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    root_logger: logging.Logger = logging.getLogger()
    root_logger.setLevel(level)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)

    # Connection-level chatter is only useful when debugging the transport
    logging.getLogger("httpx").setLevel(level if debug else logging.WARNING)
    logging.getLogger("httpcore").setLevel(level if debug else logging.WARNING)
