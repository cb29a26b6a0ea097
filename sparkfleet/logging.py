"""Logging configuration for sparkfleet.

Structured logging via loguru. Logging is disabled by default (library
behavior) and enabled by the command line front-end or by calling
setup_logging with a LogConfig.

Example:
    from sparkfleet.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="sparkfleet.log"))
    ...
    teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal, TypeAlias

from loguru import logger

# Disable by default (library behavior)
logger.disable("sparkfleet")

LogLevel: TypeAlias = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level (DEBUG, INFO, WARNING, ERROR).
        file: Path to log file. If provided, logs are written to this file.
        console: Whether to log to stderr. Defaults to True.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup."""
    logger.enable("sparkfleet")
    logger.configure(extra={"component": "sparkfleet"})
    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="sparkfleet",
        )
        handler_ids.append(hid)

    if config.file:
        hid = logger.add(
            config.file,
            level="DEBUG",  # File always captures everything
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # Don't expose credentials in tracebacks
            enqueue=True,
            filter="sparkfleet",
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("sparkfleet")


__all__ = [
    "LogConfig",
    "LogLevel",
    "setup_logging",
    "teardown_logging",
]
