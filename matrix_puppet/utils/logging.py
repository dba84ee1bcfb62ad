"""
Structured JSON logging for the puppet process.

Anything passed through ``extra={...}`` (user_id, room_id, errcode, ...) ends
up as a top-level key of the JSON line.
"""
import json
import logging
import time

PACKAGE_LOGGER = "matrix_puppet"

# Attributes every LogRecord carries on this interpreter, plus the ones
# Formatter.format() adds; everything else came from ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        log_entry.update(_extra_fields(record))
        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Install a single JSON stream handler on the package logger"""
    logger = logging.getLogger(PACKAGE_LOGGER)
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    return logger
