"""Structured logging configuration for s3stream.

The client is a library, so ``configure_logging`` only touches the
``s3stream`` logger and leaves the application's root handlers alone.
"""

import json
import logging
import sys
from datetime import datetime, timezone

LOGGER_NAME = "s3stream"

# Extra attributes the client attaches to its log records
_EXTRA_FIELDS = ("method", "path", "status", "duration_ms", "upload_id", "part_number")


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields: timestamp, level, logger, message, plus the request and upload
    extras (method, path, status, duration_ms, upload_id, part_number) when
    the record carries them.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        return json.dumps(entry, default=str)


class _ClientHandler(logging.StreamHandler):
    """The stderr handler installed by configure_logging()."""


def configure_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """Send s3stream log records to stderr with the given level and format.

    A handler installed by an earlier call is replaced; handlers added by
    the application are kept. Records stop propagating to the root logger
    so they are not printed twice.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Format type: 'text' for human-readable, 'json' for structured.

    Returns:
        The configured ``s3stream`` logger.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(numeric_level)

    for handler in logger.handlers[:]:
        if isinstance(handler, _ClientHandler):
            logger.removeHandler(handler)

    handler = _ClientHandler(sys.stderr)
    handler.setLevel(numeric_level)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    logger.addHandler(handler)
    logger.propagate = False
    return logger
