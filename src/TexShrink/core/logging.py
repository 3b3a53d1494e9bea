"""Console and rotating-file logging for TexShrink runs."""

import logging
import logging.handlers
import os
import threading

logger = logging.getLogger("texture_pipeline")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [T%(thread)d]: %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 2

_lock = threading.Lock()


def setup_logging(level: str = "INFO", log_file: str = None, force: bool = False):
    """Configure the ``texture_pipeline`` loggers.

    Standalone use (``force`` or a bare root logger) installs a console
    handler on the root logger, plus a rotating file handler when
    ``log_file`` is given. When a host application already configured
    logging, only the ``texture_pipeline`` level is set and the file handler
    is attached to that logger alone, at most once per path.
    """
    with _lock:
        numeric_level = _resolve_level(level)
        root = logging.getLogger()
        if force or not root.handlers:
            handlers = [logging.StreamHandler()]
            if log_file:
                handlers.append(_file_handler(log_file))
            logging.basicConfig(level=numeric_level, format=LOG_FORMAT,
                                handlers=handlers, force=force)
            logger.debug("Logging to console%s",
                         f" and {log_file}" if log_file else "")
            return

        logger.setLevel(numeric_level)
        if log_file and not _has_file_handler(log_file):
            handler = _file_handler(log_file)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.info("Logging to %s", log_file)


def _resolve_level(level: str) -> int:
    numeric = logging.getLevelName(str(level).upper())
    if isinstance(numeric, int):
        return numeric
    logger.warning("Invalid log level '%s', defaulting to INFO", level)
    return logging.INFO


def _file_handler(log_file: str) -> logging.Handler:
    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS,
        encoding="utf-8",
    )


def _has_file_handler(log_file: str) -> bool:
    target = os.path.abspath(log_file)
    return any(
        isinstance(h, logging.FileHandler) and h.baseFilename == target
        for h in logger.handlers
    )
