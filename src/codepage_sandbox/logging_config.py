"""Loguru sink configuration."""

import sys
from typing import Optional

from loguru import logger

from codepage_sandbox.config import Settings, get_settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Replace the default loguru sink with the configured ones.

    Args:
        settings: Settings to read level, file and JSON options from.
            Defaults to the environment-derived settings.
    """
    settings = settings or get_settings()
    level = settings.log_level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, serialize=settings.log_json, enqueue=False)

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=level,
            serialize=settings.log_json,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )

    logger.debug(f"Logging configured at {level} (file={settings.log_file}, json={settings.log_json})")
