from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog

from .config import Settings

_configured = False


def configure_logging(settings: Optional[Settings] = None, *, force: bool = False) -> None:
    """Configure structlog to write to stderr so stdout stays machine-readable.

    Repeat calls are no-ops unless ``force`` is set or explicit ``settings`` are passed.
    """
    global _configured
    if _configured and not force and settings is None:
        return
    settings = settings or Settings.from_env()
    if settings.log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    level = logging.DEBUG if settings.debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    _configured = True


def _ensure_default() -> None:
    # Leave a host application's own structlog setup alone.
    if not _configured and not structlog.is_configured():
        configure_logging()


def get_logger(name: Optional[str] = None, **initial: Any) -> Any:
    _ensure_default()
    return structlog.get_logger(name, **initial)
