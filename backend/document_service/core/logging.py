"""
Process-wide logging setup.

Log lines follow "Event | key=value ..." so they grep well; configure once
per process (worker boot, CLI entry point, test session).
"""

from __future__ import annotations

import logging

from document_service.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Chatty third-party loggers kept at WARNING unless debugging
_NOISY_LOGGERS = ("botocore", "aiobotocore", "httpx", "httpcore", "pypdf")


def configure_logging(settings: Settings) -> None:
    level = logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if settings.debug else logging.WARNING)
