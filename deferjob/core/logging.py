from __future__ import annotations

import logging

from deferjob.core.config import get_settings

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    logger = logging.getLogger("deferjob")
    logger.setLevel((level or get_settings().log_level).upper())
    if any(getattr(handler, "_deferjob_handler", False) for handler in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._deferjob_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
