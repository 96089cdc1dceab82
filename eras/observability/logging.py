from __future__ import annotations

import logging
import os
from typing import Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Transport libraries log full request lines at INFO; keep them out of the app log.
_QUIET_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore")


def _resolve_level(override: str | None = None) -> int:
    level_name = (override or os.getenv("ERAS_LOG_LEVEL") or os.getenv("LOG_LEVEL", "INFO")).upper()
    return getattr(logging, level_name, logging.INFO)


def _attach_handler(level: int) -> None:
    global _HANDLER_ATTACHED

    root = logging.getLogger()
    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        _HANDLER_ATTACHED = True
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger configured with a single stream handler."""
    level = _resolve_level()
    _attach_handler(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


def set_log_level(level_name: str) -> None:
    """Force the root and all eras loggers to a level (used by the sweep CLI)."""
    level = _resolve_level(level_name)
    _attach_handler(level)
    for name, existing in logging.root.manager.loggerDict.items():
        if name.startswith("eras") and isinstance(existing, logging.Logger):
            existing.setLevel(level)
