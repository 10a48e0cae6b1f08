"""Webhook notifier for connection and grant events.

Notifications are best-effort: the caller has already persisted its state
change, so a delivery failure is logged and dropped.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class WebhookNotifier:
    """POST ``{"event": ..., "payload": ...}`` to a configured URL."""

    def __init__(
        self,
        url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._url = url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            resp = await self._client.post(self._url, json={'event': event, 'payload': payload})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning('Notification %s not delivered: %s', event, exc)
            return
        logger.debug('Notification %s delivered', event)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
