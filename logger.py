"""Logging for the z.ai proxy: rotating file log plus an optional debug console."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, List

import colorlog

if TYPE_CHECKING:
    from config import AppConfig

LOGGER_NAME = "zai_proxy"
DEFAULT_LOG_PATH = "/var/log/zai-proxy/zai-proxy.log"

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
_LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(
    log_path: str | None = None,
    level_name: str = "INFO",
    *,
    use_color: bool = True,
    console: bool = False,
) -> logging.Logger:
    """
    Configure the ``zai_proxy`` logger.

    Records go to a rotating file at ``log_path`` (1 MB x 3 backups). When the
    file cannot be opened they go to stderr instead. ``console=True`` mirrors
    records to stderr as well, which is how DEBUG_MODE makes the per-fragment
    read/write trace visible while running in a terminal.

    ``level_name="DISABLE"`` silences logging entirely.
    """
    level_name = (level_name or "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    path = log_path or DEFAULT_LOG_PATH
    handlers: List[logging.Handler] = []
    fallback_err: OSError | None = None
    try:
        file_handler = RotatingFileHandler(path, maxBytes=1_048_576, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
        handlers.append(file_handler)
    except OSError as e:
        fallback_err = e

    if console or fallback_err is not None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(_console_formatter(use_color))
        handlers.append(stream_handler)

    for handler in handlers:
        logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning("Failed to open log file %r (%s). Logging to stderr.", path, fallback_err)
    return logger


def setup_logging_from_config(config: AppConfig) -> logging.Logger:
    """Configure logging from the loaded AppConfig."""
    return setup_logging(
        config.log_path,
        config.log_level,
        use_color=config.log_color,
        console=config.debug_mode,
    )


def _console_formatter(use_color: bool) -> logging.Formatter:
    if use_color:
        return colorlog.ColoredFormatter(_COLOR_FORMAT, reset=True, log_colors=_LEVEL_COLORS)
    return logging.Formatter(_PLAIN_FORMAT)


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a token for logs, keeping only its first and last characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
