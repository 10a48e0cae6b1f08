"""structlog setup for the sharing service.

Every record, whether it comes from a structlog logger or a plain
``logging.getLogger(__name__)`` module logger, passes through the same
processor chain:

  - the request id of the current request, if any, is attached;
  - share-link tokens inside string values (request paths, URLs, free
    text) are cut down to their correlation prefix;
  - the result is rendered as JSON lines, or for a terminal when
    ``LOG_FORMAT`` is not ``json``.

Usage::

    from stable_sharing.observability.logging import configure_logging, get_logger

    configure_logging()  # once, from create_app
    logger = get_logger(__name__)
    logger.info("request_completed", path="/api/v1/public/shares/horse/...")
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any

import structlog

from ..audit.log import redact_string

# Correlation id of the request being served.
request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Keys structlog fills in itself; never rewritten.
_RESERVED_KEYS = frozenset({"timestamp", "level", "logger", "request_id"})

_configured = False


def _add_request_id(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict["request_id"] = rid
    return event_dict


def redact_share_tokens(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Shorten share-link tokens in every string value of the event."""
    for key, value in event_dict.items():
        if key not in _RESERVED_KEYS and isinstance(value, str):
            event_dict[key] = redact_string(value)
    return event_dict


def configure_logging(
    *,
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Install the processor chain on structlog and the stdlib root logger.

    Idempotent; later calls are ignored.

    Args:
        level: Log level name. Defaults to ``LOG_LEVEL`` or INFO.
        json_output: JSON lines when True. Defaults to ``LOG_FORMAT == "json"``.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.environ.get("LOG_FORMAT", "json") == "json"

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        _add_request_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_share_tokens,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # uvicorn's access log prints raw paths, tokens included.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
