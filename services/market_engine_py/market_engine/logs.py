"""Logger factory shared by the engine components."""
from __future__ import annotations

import logging
import os

_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        _h = logging.StreamHandler()
        _h.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(_h)
    logger.setLevel(os.getenv("MARKET_LOG_LEVEL", "INFO").strip().upper() or "INFO")
    return logger
