"""
Logging configuration for the auction engine.

Every subsystem logs under the ``comment_auction`` logger, e.g.
``comment_auction.engine`` or ``comment_auction.monitor``.
"""

import logging
import sys
from typing import Optional, Union

import colorlog

ROOT_LOGGER = "comment_auction"

_initialized = False


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None):
    """Install console (colored) and optional file handlers once."""
    global _initialized
    if _initialized:
        return

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(name)s] %(levelname)-8s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """Logger for one subsystem (``parser``, ``engine``, ``monitor``...)"""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
