"""Structured logging helpers."""

from __future__ import annotations

import logging

import structlog

SENSITIVE_KEYS = frozenset({"access_token", "api_key", "authorization"})


def redact_credentials(_, __, event_dict: dict) -> dict:
    """Mask bearer tokens and API keys that end up in an event's context."""

    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def configure_logging(level: int | str = logging.INFO, *, json_output: bool = True) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler()],
    )
    renderer = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str):
    """Return a logger bound to a subsystem component name."""

    return structlog.get_logger().bind(component=component)


logger = structlog.get_logger()

__all__ = ["configure_logging", "get_logger", "logger", "redact_credentials"]
