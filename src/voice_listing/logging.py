"""Package logging.

Every module logger is a child of the ``voice_listing`` logger. Handlers are
attached to that parent only, once, so records are written a single time
no matter how many modules ask for a logger.
"""

import logging
import os
from typing import Optional, Union

PACKAGE_LOGGER = "voice_listing"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def parse_level(value: Union[str, int, None], default: int = logging.INFO) -> int:
    """Map a level name (``"debug"``, ``"WARN"``) or number to a logging level."""
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        name = value.strip().upper()
        if name == "WARN":
            name = "WARNING"
        level = logging.getLevelName(name)
        if isinstance(level, int):
            return level
    return default


def _package_logger() -> logging.Logger:
    return logging.getLogger(PACKAGE_LOGGER)


def configure_logging(level: Union[str, int, None] = None, log_file: Optional[str] = None) -> logging.Logger:
    """Attach handlers to the package logger and set its level.

    ``level`` falls back to LOG_LEVEL and ``log_file`` to LOG_FILE. Calling
    again only changes the level; handlers are never duplicated.
    """
    logger = _package_logger()
    logger.setLevel(parse_level(level if level is not None else os.environ.get("LOG_LEVEL")))
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_file = log_file or os.environ.get("LOG_FILE")
    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError:
            logger.warning(f"LOG_FILE {log_file!r} could not be opened; logging to stderr only")
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def set_level(level: Union[str, int]) -> None:
    _package_logger().setLevel(parse_level(level))


def get_logger(name: str) -> logging.Logger:
    if not _package_logger().handlers:
        configure_logging()
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
