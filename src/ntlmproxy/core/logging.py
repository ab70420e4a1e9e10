"""
Structured logging setup.

All modules log through structlog with event-name messages, e.g.
``logger.info("tunnel_established", target="example.com:443")``.
configure_logging() is called once by the CLI before the listener starts.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

import structlog


def configure_logging(verbose: bool = False, stream: Optional[TextIO] = None) -> None:
    """
    Configure structlog for console output.

    Without verbose only warnings and errors are printed; verbose shows
    every request, handshake transition and tunnel event.

    Args:
        verbose: Lower the threshold to DEBUG
        stream: Output stream (default stdout); colors only on a TTY
    """
    stream = stream or sys.stdout
    level = logging.DEBUG if verbose else logging.WARNING

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=stream.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
