"""
Structured logging with structlog.

Call ``setup_logging()`` once per process (FastAPI lifespan, Celery worker
start, CLI start), then ``get_logger(__name__)`` anywhere::

    logger = get_logger(__name__)
    logger.info("Template created", template_id=str(template.id))
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, MutableMapping

import structlog
from structlog.types import EventDict

from app.core.config import settings

SENSITIVE_PATTERNS = [
    re.compile(r".*password.*", re.IGNORECASE),
    re.compile(r".*token.*", re.IGNORECASE),
    re.compile(r".*secret.*", re.IGNORECASE),
    re.compile(r"^database_url.*$", re.IGNORECASE),
]

REDACTED_VALUE = "[REDACTED]"


def _redact(data: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key, value in list(data.items()):
        if any(pattern.match(key) for pattern in SENSITIVE_PATTERNS):
            data[key] = REDACTED_VALUE
        elif isinstance(value, dict):
            data[key] = _redact(dict(value))
    return data


def redaction_processor(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Structlog processor that masks credentials before rendering."""
    return _redact(event_dict)


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure stdlib logging + structlog. Safe to call more than once."""
    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    if json_output is None:
        json_output = settings.LOG_JSON
    if json_output is None:
        json_output = settings.APP_ENV != "development"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )
    # SQL echo is controlled by the engine, keep the logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redaction_processor,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to ``name``."""
    return structlog.get_logger(name)
