"""Structured logging configuration for the federated chat core."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import structlog


def setup_logging(
    level: str = "INFO",
    component: Optional[str] = None,
    log_path: Optional[str | Path] = None,
) -> structlog.BoundLogger:
    """Configure structured logging and return a bound logger."""

    handlers: list[logging.Handler] = []
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    else:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
        force=True,
    )
    # pymongo's own debug chatter drowns out the protocol events
    logging.getLogger("pymongo").setLevel(max(logging.WARNING, logging.getLogger().level))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            scrub_locations,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger()
    if component:
        logger = logger.bind(component=component)
    return logger


LOCATION_KEYS = ("location", "uri", "store_location")


def scrub_locations(logger, method_name, event_dict):
    """Processor that strips credentials from any store location in an event."""
    for key in LOCATION_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and "@" in value:
            event_dict[key] = redact_location(value, keep=len(value))
    return event_dict


def get_logger(name: str, **context) -> structlog.BoundLogger:
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger


def redact_location(location: Optional[str], keep: int = 40) -> str:
    """Strip credentials from a store location and shorten it for log output."""
    if not location:
        return "<none>"
    if "@" in location:
        scheme, sep, rest = location.partition("://")
        host_part = rest.split("@", 1)[1] if sep else location.split("@", 1)[1]
        location = f"{scheme}://***@{host_part}" if sep else f"***@{host_part}"
    return location[:keep] + "..." if len(location) > keep else location
