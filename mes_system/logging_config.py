"""Logging configuration for the application."""

import logging
import sys
from typing import Optional

from .config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure application-wide logging.

    Level is DEBUG when ``settings.debug`` is True, otherwise ``log_level``.
    Output goes to stdout.
    """
    settings = settings or get_settings()
    if settings.debug:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(settings.log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


__all__ = ["setup_logging"]
