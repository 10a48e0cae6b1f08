"""Structured logging: request-ID correlation and share-token redaction.

Validates:
  - structlog events carry the request id and never the full share token.
  - Plain stdlib records get the same treatment through foreign_pre_chain.
  - The request logging middleware logs a redacted path.
"""

from __future__ import annotations

import io
import json
import logging

import pytest
import structlog
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from stable_sharing.observability import middleware
from stable_sharing.observability.logging import (
    _add_request_id,
    redact_share_tokens,
    request_id_ctx,
)
from stable_sharing.observability.middleware import RequestIdMiddleware, RequestLoggingMiddleware

TOKEN = "Zm9vYmFyYmF6cXV4cXV1eGNvcmdlZ3JhdWx0"


def _json_handler(buf: io.StringIO, foreign_pre_chain=None) -> logging.Handler:
    handler = logging.StreamHandler(buf)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=foreign_pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    return handler


class TestRedactionProcessor:
    def test_structlog_event_values_are_redacted(self):
        buf = io.StringIO()
        test_logger = logging.getLogger("test.redact_structlog")
        test_logger.handlers = [_json_handler(buf)]
        test_logger.setLevel(logging.DEBUG)

        bound = structlog.wrap_logger(
            test_logger,
            processors=[
                _add_request_id,
                redact_share_tokens,
                structlog.stdlib.add_log_level,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
        )
        rid = request_id_ctx.set("test-rid-12345678")
        try:
            bound.info(
                "request_completed",
                path=f"/api/v1/public/shares/horse/{TOKEN}",
                share_id="shr_0123456789abcdef",
            )
        finally:
            request_id_ctx.reset(rid)

        output = buf.getvalue()
        entry = json.loads(output.strip())
        assert TOKEN not in output
        assert entry["path"] == f"/api/v1/public/shares/horse/{TOKEN[:8]}..."
        assert entry["share_id"] == "shr_0123456789abcdef"
        assert entry["request_id"] == "test-rid-12345678"

    def test_stdlib_records_are_redacted(self):
        buf = io.StringIO()
        test_logger = logging.getLogger("test.redact_stdlib")
        test_logger.handlers = [_json_handler(buf, foreign_pre_chain=[redact_share_tokens])]
        test_logger.setLevel(logging.DEBUG)
        test_logger.propagate = False

        test_logger.warning("link opened: https://app.example.com/shared/media/%s", TOKEN)

        output = buf.getvalue()
        assert TOKEN not in output
        assert f"/shared/media/{TOKEN[:8]}..." in json.loads(output.strip())["event"]

    def test_non_string_values_untouched(self):
        event = {"event": "x", "status": 404, "counts": {"files": 2}}
        assert redact_share_tokens(None, "info", dict(event)) == event


class _RecordingLogger:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def info(self, event: str, **kwargs) -> None:
        self.calls.append((event, kwargs))


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_completed_request_logs_redacted_path(self, monkeypatch):
        recorder = _RecordingLogger()
        monkeypatch.setattr(middleware, "logger", recorder)

        app = FastAPI()
        app.add_middleware(RequestLoggingMiddleware)
        app.add_middleware(RequestIdMiddleware)

        @app.get("/api/v1/public/shares/horse/{token}")
        async def read(token: str):
            return {"ok": True}

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get(f"/api/v1/public/shares/horse/{TOKEN}")

        assert resp.status_code == 200
        [(event, fields)] = recorder.calls
        assert event == "request_completed"
        assert fields["status"] == 200
        assert fields["path"] == f"/api/v1/public/shares/horse/{TOKEN[:8]}..."
