from __future__ import annotations

import logging
import sys
from typing import Any, List, Mapping

import structlog

from . import __version__
from .config import get_settings

# Loggers that are noisy at INFO while the poll loop runs.
_QUIET_LOGGERS = ("httpx", "httpcore", "redis")

_configured = False


def _add_app_context(
    logger: structlog.BoundLogger,
    method_name: str,
    event_dict: Mapping[str, Any],
) -> Mapping[str, Any]:
    """
    Stamp every record with app name, environment and version.
    """
    settings = get_settings()
    event_dict.setdefault("app", settings.app_name)
    event_dict.setdefault("env", settings.env)
    event_dict.setdefault("version", __version__)
    return event_dict


def _renderer(json_logs: bool) -> Any:
    if json_logs:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(*, force: bool = False) -> None:
    """
    Configure structlog over stdlib logging.

    JSON lines in staging/prod, a readable console format in dev unless
    TOPOLOGY_STUDIO_LOG_JSON says otherwise. Repeated calls are no-ops
    unless force=True.
    """
    global _configured
    if _configured and not force:
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    json_logs = settings.log_json if settings.log_json is not None else settings.env != "dev"

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout, force=force)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
    processors.append(_renderer(json_logs))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _configured = True
