"""Logging helpers shared by every clinex module."""

from __future__ import annotations

import logging
import sys
from typing import Optional

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONFIGURED = False


def setup_logging(level: Optional[str] = None) -> None:
    """Attach a single stream handler to the ``clinex`` logger tree.

    Safe to call repeatedly; later calls only adjust the level.
    """
    global _CONFIGURED
    if level is None:
        from clinex.core.unified_config import get_config

        level = get_config().log_level

    root = logging.getLogger("clinex")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if _CONFIGURED:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = True
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["get_logger", "setup_logging"]
