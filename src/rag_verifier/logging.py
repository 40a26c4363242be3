"""Structured logging for rag_verifier.

Call :func:`setup_logging` once from the enclosing service; library modules
only ever call :func:`get_logger`. Until `setup_logging` runs, structlog's
defaults apply, so importing the library never reconfigures the host's
logging.
"""
from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure stdlib logging and structlog processors.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ...).
        json_output: Render events as JSON lines when True, otherwise use
            structlog's human-readable console renderer.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger, typically `get_logger(__name__)`."""
    return structlog.get_logger(name)


def request_context(**fields: Any) -> AbstractContextManager[None]:
    """Attach fields (e.g. scope) to every event logged inside the `with` block.

    On exit only these keys are reset to their previous values, so context
    bound by the enclosing service survives.
    """
    return structlog.contextvars.bound_contextvars(**fields)
