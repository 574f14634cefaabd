"""structlog setup for applications embedding the client."""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from octopus_client.utils import scrub_api_keys


def scrub_credentials(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """structlog processor that redacts API keys from string values."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = scrub_api_keys(value)
    return event_dict


def configure_logging(json_output: bool | None = None, level: str = "info") -> None:
    """Configure structlog to print to stderr.

    ``json_output=None`` picks the console renderer on a terminal and JSON
    otherwise.
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        msg = f"Invalid log level: {level!r}."
        raise ValueError(msg)

    use_json = not sys.stderr.isatty() if json_output is None else json_output
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            scrub_credentials,
            structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
