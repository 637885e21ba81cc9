"""loguru sink setup."""

from __future__ import annotations

import sys

from loguru import logger

from image_transformer.config import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    """Replace loguru's default sink with the configured one."""
    logger.remove()
    level = config.level.upper()
    if config.output == "stdout":
        logger.add(sys.stdout, level=level)
    elif config.output == "stderr":
        logger.add(sys.stderr, level=level)
    else:
        logger.add(config.output, level=level, rotation="10 MB")
    logger.debug(f"Logging configured at {level} to {config.output}")
