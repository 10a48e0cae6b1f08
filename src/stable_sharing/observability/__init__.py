"""Structured logging, resolution metrics and request-ID correlation."""

from .logging import configure_logging, get_logger, request_id_ctx
from .metrics import metrics_text, record_resolution

__all__ = [
    "configure_logging",
    "get_logger",
    "metrics_text",
    "record_resolution",
    "request_id_ctx",
]
