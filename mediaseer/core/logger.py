"""Logging setup shared by all modules."""

import logging
import logging.handlers
import sys
from typing import Any

from mediaseer.config.env import DEBUG, ENABLE_LOGGING, LOG_DIR, LOG_FILE, LOG_LEVEL

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

_file_handler: logging.Handler | None = None
_file_handler_failed = False


class MediaseerLogger(logging.Logger):
    """Logger with a traceback-aware error helper."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error with the current exception traceback attached."""
        kwargs.setdefault("exc_info", True)
        self.error(msg, *args, **kwargs)


def _get_file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    global _file_handler, _file_handler_failed

    if _file_handler is not None or _file_handler_failed:
        return _file_handler

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            LOG_FILE,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        # One stderr line, then console-only logging.
        print(f"[logger] File logging disabled ({LOG_FILE}): {e}", file=sys.stderr)
        _file_handler_failed = True
        return None

    handler.setFormatter(formatter)
    _file_handler = handler
    return handler


def setup_logger(name: str) -> MediaseerLogger:
    """Return a configured logger for the given module name."""
    previous_class = logging.getLoggerClass()
    logging.setLoggerClass(MediaseerLogger)
    try:
        logger = logging.getLogger(name)
    finally:
        logging.setLoggerClass(previous_class)

    if not isinstance(logger, MediaseerLogger):
        # Created before our class was installed (e.g. by a third-party import).
        logger.__class__ = MediaseerLogger

    if logger.handlers:
        return logger  # type: ignore[return-value]

    level = logging.DEBUG if DEBUG else getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(level)
    logger.propagate = False

    formatter = logging.Formatter(_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if ENABLE_LOGGING:
        file_handler = _get_file_handler(formatter)
        if file_handler is not None:
            logger.addHandler(file_handler)

    return logger  # type: ignore[return-value]
