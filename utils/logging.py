"""Logger factory shared by the CW trainer modules."""

from __future__ import annotations

import logging
import sys

try:
    from config import LOG_LEVEL
except ImportError:
    LOG_LEVEL = 'INFO'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with a single stream handler attached."""
    logger = logging.getLogger(name)
    if not any(getattr(h, '_cwtrainer_handler', False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._cwtrainer_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    return logger


morse_logger = get_logger('cwtrainer.morse')
tone_logger = get_logger('cwtrainer.tone')
routes_logger = get_logger('cwtrainer.routes')
