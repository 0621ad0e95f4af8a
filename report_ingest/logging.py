"""Structured logging for ingestion runs.

Every event is a snake_case structlog event.  Two context managers bind
the fields that tie a line to its run and category:

* :func:`bound_run` for the whole run (``run_id``, ``mode``);
* :func:`bound_category` for one delivery (``category``, ``method``, ...).

Both bind through contextvars, so concurrent delivery tasks never see
each other's category.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import AbstractContextManager, contextmanager
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from .errors import ConfigurationError

# Chatty at INFO; they drown out per-category events.
_NOISY_LOGGERS = ("sqlalchemy.engine", "botocore", "boto3", "urllib3", "aiosqlite")


def plain_values(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Render enums by value and paths as strings, so ``category=Category.ORDERS`` logs ``"orders"``."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
        elif isinstance(value, Path):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one stdout handler.

    *json* selects JSON lines (scheduled runs) over the console renderer.
    Raises :class:`ConfigurationError` for an unknown *level* name.
    """
    numeric = logging.getLevelNamesMapping().get(level.upper())
    if numeric is None:
        raise ConfigurationError(f"Unknown log level: {level}")

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        plain_values,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.add_log_level, structlog.stdlib.add_logger_name],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))


@contextmanager
def _bound(**fields: object) -> Iterator[None]:
    tokens = structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


def bound_run(run_id: str, **extra: object) -> AbstractContextManager[None]:
    """Attach ``run_id`` (and *extra*) to every log line emitted inside the block."""
    return _bound(run_id=run_id, **extra)


def bound_category(category: Enum, **extra: object) -> AbstractContextManager[None]:
    """Attach ``category`` (and *extra*) for the duration of one delivery."""
    return _bound(category=category.value, **extra)
