# FILE: app/core/logging_config.py
from __future__ import annotations

import logging
import sys

from app.core.config import settings

_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    """
    One console handler on the root logger, same format as the analyzer
    connector. Safe to call more than once.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(
        logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    root.addHandler(ch)

    # requests/urllib3 are chatty at INFO
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _CONFIGURED = True
