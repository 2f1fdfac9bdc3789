"""Structlog configuration shared by the pipeline, the worker runtime and the CLI.

Events are dotted names (``duplication.stage.started``) with key/value context;
components receive a bound logger instead of reaching for a global one, so callers
decide which context (duplication id, stage, ...) travels with every event.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from episodes_core.settings import settings


def configure_logging(level: str | None = None, *, json_logs: bool | None = None) -> None:
    """Configure structlog once per process.

    Args:
        level: Minimum level name (``DEBUG``, ``INFO``, ...). Defaults to
            ``EPISODES_LOG_LEVEL``.
        json_logs: Emit JSON lines instead of the console renderer. Defaults to
            ``EPISODES_LOG_JSON``.
    """
    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json_logs is None else json_logs

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if use_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(sort_keys=True)]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level_name)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.BoundLogger:
    return structlog.get_logger(name, **initial_values)
