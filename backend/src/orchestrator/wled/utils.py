"""General utilities for the wled package."""

from __future__ import annotations

import os
import sys

from loguru import logger

_LOGGER_CONFIGURED = False


def configure_logging(*, force: bool = False) -> None:
    """Set up the global Loguru logger with application defaults."""
    global _LOGGER_CONFIGURED
    if _LOGGER_CONFIGURED and not force:
        return

    log_level = os.getenv("ORCHESTRATOR_LOG_LEVEL", "INFO")
    diagnose = os.getenv("ORCHESTRATOR_LOG_DIAGNOSE", "false").lower() in {
        "1",
        "true",
        "yes",
        "on",
    }

    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        backtrace=False,
        diagnose=diagnose,
        enqueue=False,
        colorize=True,
    )

    _LOGGER_CONFIGURED = True


def device_url(ip: str, path: str, *, scheme: str = "http") -> str:
    """Build the URL of an endpoint exposed by a WLED controller."""
    host = ip.strip()
    return f"{scheme}://{host}/{path.lstrip('/')}"


configure_logging()

__all__ = [
    "configure_logging",
    "device_url",
    "logger",
]
