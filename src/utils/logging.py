"""Logging configuration for the Yield Reallocator.

This module provides structured logging setup with configurable output format.
"""

import logging
import sys
from typing import Any

# Third-party loggers that flood DEBUG output with per-request chatter
NOISY_LOGGERS = ("urllib3", "apscheduler", "web3")


def setup_logging(
    level: str = "INFO",
    log_format: str | None = None,
    quiet_libraries: bool = True,
) -> None:
    """Configure logging for the application.

    Sets up the root logger with specified level and format.
    Logs are written to stdout so the scheduler's output can be piped.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Custom format string. If None, uses default format.
        quiet_libraries: Raise HTTP/scheduler/web3 loggers to WARNING

    Example:
        >>> from src.utils.logging import setup_logging
        >>> setup_logging(level="DEBUG")
    """
    if log_format is None:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=log_format,
        stream=sys.stdout,
        force=True,  # Override any existing configuration
    )

    if quiet_libraries:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: Any,
) -> None:
    """Log a message with structured context.

    Context is appended to the message in key=value format, which keeps
    reallocation logs greppable by user, vault or transaction hash.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        **context: Additional context fields

    Example:
        >>> logger = get_logger(__name__)
        >>> log_with_context(
        ...     logger, "info", "Position reallocated",
        ...     user="0xabc...", index=0, tx="0x123..."
        ... )
        # Logs: "Position reallocated | user=0xabc... index=0 tx=0x123..."
    """
    log_func = getattr(logger, level.lower())

    if context:
        context_str = " ".join(f"{k}={v}" for k, v in context.items())
        full_message = f"{message} | {context_str}"
    else:
        full_message = message

    log_func(full_message)
