"""Centralized logging setup."""

import logging
import os
import sys

LOG_LEVEL = os.getenv("CUSTODY_LOG_LEVEL", "INFO")


def configure_logging(log_level: str = LOG_LEVEL) -> int:
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(level)

    if not any(isinstance(handler, logging.StreamHandler) for handler in logger.handlers):
        formatter = logging.Formatter(
            "[%(asctime)s.%(msecs)03d] [%(levelname)-5s] [%(name)-24s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # Statement echo is far too chatty below WARNING.
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))
    return level
