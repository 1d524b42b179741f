"""
Structured Logging Configuration Module

One JSON object per line for every ledger event. Structured context
(who, what, on which resource) travels on the log record and is only
emitted when set.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional, TextIO


TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

LOG_FORMATS = ("json", "text")

# Record attributes copied into the JSON body when present
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """Render a log record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", fmt: str = "json",
                  logger_name: str = "core_ledger",
                  stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "json" or "text"
        logger_name: Logger to configure; child loggers propagate to it
        stream: Where to write; stderr when omitted

    Returns:
        The configured logger

    Raises:
        ValueError: If fmt or level is not recognised
    """
    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {fmt!r}, expected one of {LOG_FORMATS}")

    levelno = logging.getLevelName(level.upper())
    if not isinstance(levelno, int):
        raise ValueError(f"Unknown log level {level!r}")

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))

    logger = logging.getLogger(logger_name)
    for existing in logger.handlers[:]:
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(levelno)
    logger.propagate = False

    return logger


def get_logger(name: str = "core_ledger") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Emit a structured event.

    The record is attributed to the caller of log_action, so ``module``
    names the component that performed the action.
    """
    context = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra,
    }
    logger.log(
        logging.getLevelName(level.upper()),
        message,
        extra={key: value for key, value in context.items() if value},
        stacklevel=2,
    )
