"""
Loguru setup for the API process and the worker process.

Standard library loggers (uvicorn, httpx, sqlalchemy) are redirected into
loguru so a single sink receives everything.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger

from app.core.config import Settings


def configure_logger(settings: Settings) -> None:
    logger.remove()
    logger.add(
        sink=sys.stderr,
        level=settings.LOG_LEVEL.upper(),
        format=settings.LOG_FORMAT,
        colorize=not settings.LOG_SERIALIZE,
        serialize=settings.LOG_SERIALIZE,
        backtrace=settings.DEBUG,
        diagnose=settings.DEBUG,
    )


class InterceptHandler(logging.Handler):
    """Redirects standard logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # find the caller outside the logging module
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def intercept_standard_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(handlers=[InterceptHandler()], level=level, force=True)

    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx", "sqlalchemy.engine"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False


__all__ = ["logger", "configure_logger", "InterceptHandler", "intercept_standard_logging"]
