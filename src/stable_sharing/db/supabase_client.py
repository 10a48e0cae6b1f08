"""Async Supabase client: PostgREST for the sharing tables, Storage for signing.

The single point of Supabase HTTP interaction. A 4xx response becomes a
``SupabaseError`` subclass. Timeouts, transport failures and 5xx responses
become the domain's retryable ``StoreUnavailable``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union
from urllib.parse import quote

import httpx

from ..errors import StoreUnavailable
from .errors import SupabaseError, error_class_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PostgrestFilter:
    column: str
    op: str
    value: Any


Filters = Union[Sequence[PostgrestFilter], Mapping[str, Any], None]


def _encode_filter_value(op: str, value: Any) -> str:
    if op == "is":
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        items = [json.dumps(v) if isinstance(v, str) else str(v) for v in value]
        return f"({','.join(items)})"

    if value is None:
        raise ValueError(f"{op} does not support None; use op='is' with value=None")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filters_to_params(filters: Filters) -> list[tuple[str, str]]:
    """Query parameters for ``filters``. A column may appear more than once."""
    if not filters:
        return []
    if isinstance(filters, Mapping):
        params = []
        for col, spec in filters.items():
            op, val = spec if isinstance(spec, tuple) and len(spec) == 2 else ("eq", spec)
            params.append((str(col), f"{op}.{_encode_filter_value(str(op), val)}"))
        return params
    return [(f.column, f"{f.op}.{_encode_filter_value(f.op, f.value)}") for f in filters]


def or_filter(*conditions: PostgrestFilter) -> tuple[str, str]:
    """``or=(a.eq.1,b.eq.2)`` parameter for alternatives across columns."""
    inner = ",".join(
        f"{c.column}.{c.op}.{_encode_filter_value(c.op, c.value)}" for c in conditions
    )
    return ("or", f"({inner})")


class SupabaseClient:
    """Minimal async PostgREST client using the service-role key."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")
        self._supabase_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or httpx.AsyncClient()

    @property
    def base_rest_url(self) -> str:
        return f"{self._supabase_url}/rest/v1"

    @property
    def base_storage_url(self) -> str:
        return f"{self._supabase_url}/storage/v1"

    def _headers(self, *, representation: bool = False) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    def _raise_for_error(self, method: str, path: str, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        pg_code = details = hint = None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                pg_code = payload.get("code")
                details = payload.get("details")
                hint = payload.get("hint")
        except ValueError:
            pass

        if resp.status_code >= 500:
            logger.warning(
                "PostgREST %s %s failed with status %d", method, path, resp.status_code,
            )
            raise StoreUnavailable(f"{method} {path} failed with status {resp.status_code}")
        raise error_class_for(resp.status_code)(
            status_code=resp.status_code,
            message=message,
            pg_code=pg_code,
            details=details,
            hint=hint,
        )

    async def _request(
        self, method: str, path: str, *, base_url: str | None = None, **kwargs: Any,
    ) -> Any:
        try:
            resp = await self._client.request(
                method,
                f"{base_url or self.base_rest_url}/{path}",
                timeout=self._timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as exc:
            logger.warning("PostgREST %s %s timed out", method, path)
            raise StoreUnavailable(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("PostgREST %s %s failed: %s", method, path, type(exc).__name__)
            raise StoreUnavailable(f"{method} {path} unreachable") from exc
        self._raise_for_error(method, path, resp)
        if not resp.content:
            return []
        return resp.json()

    @staticmethod
    def _expect_list(payload: Any, operation: str) -> list[dict[str, Any]]:
        if not isinstance(payload, list):
            raise SupabaseError(status_code=500, message=f"expected list response from {operation}")
        return payload

    async def select(
        self,
        table: str,
        filters: Filters = None,
        *,
        extra_params: Sequence[tuple[str, str]] = (),
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = [*_filters_to_params(filters), *extra_params, ("select", columns)]
        if limit is not None:
            params.append(("limit", str(int(limit))))
        if order:
            params.append(("order", order))
        payload = await self._request("GET", table, params=params, headers=self._headers())
        return self._expect_list(payload, "select")

    async def insert(
        self,
        table: str,
        data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        upsert: bool = False,
        on_conflict: str | None = None,
    ) -> list[dict[str, Any]]:
        headers = self._headers(representation=True)
        params = []
        if upsert:
            headers["Prefer"] = f"{headers['Prefer']},resolution=merge-duplicates"
            if on_conflict:
                params.append(("on_conflict", on_conflict))
        payload = await self._request("POST", table, params=params, json=data, headers=headers)
        return self._expect_list(payload, "insert")

    async def update(
        self,
        table: str,
        filters: Filters,
        data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        payload = await self._request(
            "PATCH",
            table,
            params=_filters_to_params(filters),
            json=data,
            headers=self._headers(representation=True),
        )
        return self._expect_list(payload, "update")

    async def delete(self, table: str, filters: Filters) -> list[dict[str, Any]]:
        payload = await self._request(
            "DELETE",
            table,
            params=_filters_to_params(filters),
            headers=self._headers(representation=True),
        )
        return self._expect_list(payload, "delete")

    async def sign_object(self, bucket: str, path: str, expires_in: int) -> str:
        """Absolute signed download URL for a storage object."""
        payload = await self._request(
            "POST",
            f"object/sign/{quote(bucket)}/{quote(path)}",
            base_url=self.base_storage_url,
            json={"expiresIn": int(expires_in)},
            headers=self._headers(),
        )
        signed = payload.get("signedURL") if isinstance(payload, dict) else None
        if not signed:
            raise SupabaseError(status_code=200, message="sign response carried no signedURL")
        return f"{self.base_storage_url}{signed}"

    async def aclose(self) -> None:
        await self._client.aclose()
