"""Structured logging setup."""

from __future__ import annotations

import logging

import structlog


def configure_logging(verbose: bool = False, json_output: bool | None = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_output: Render JSON lines; defaults to True unless verbose
    """
    level = logging.DEBUG if verbose else logging.INFO
    if json_output is None:
        json_output = not verbose

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level)
