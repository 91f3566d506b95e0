"""Structured logging configuration.

``setup_logging`` routes both structlog loggers and stdlib
``logging.getLogger(__name__)`` loggers through one structlog processor
chain, rendering JSON when ``LOG_FORMAT=json`` and readable console lines
otherwise.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog

_configured = False


def _shared_processors(service_name: str) -> list[Any]:
    def add_service(_logger, _method, event_dict):
        event_dict.setdefault("service", service_name)
        return event_dict

    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service,
    ]


def setup_logging(
    level: str = "INFO",
    service_name: str = "harvester",
    log_format: Optional[str] = None,
) -> None:
    """Configure structlog and the stdlib root logger."""
    global _configured

    if log_format is None:
        from harvester import config

        log_format = config.LOG_FORMAT

    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    shared = _shared_processors(service_name)

    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=shared + [
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # Quiet chatty third-party loggers
    for name in ("urllib3", "selenium", "httpx", "openai"):
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    _configured = True


def get_logger(name: Optional[str] = None) -> Any:
    return structlog.get_logger(name)


def is_configured() -> bool:
    return _configured


def bind_request_context(**values: Any) -> None:
    structlog.contextvars.bind_contextvars(**values)


def unbind_trace_context(*keys: str) -> None:
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
