"""Supabase-backed connection and consent-grant repositories.

Tables: ``connections`` and ``consent_grants``. State transitions are
conditional PATCHes filtered on the expected current status; an empty
result means another writer got there first.

A partial unique index on ``connections`` (initiator, recipient, type)
where status is pending or accepted backs the duplicate check; a 409 from
it is reported as ``DuplicateActive``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..connections.model import (
    Connection,
    ConsentGrant,
    GrantState,
)
from ..connections.state_machine import ACTIVE_STATES, ConnectionState
from ..errors import DuplicateActive
from .errors import SupabaseConflictError
from .rows import iso, parse_day, parse_ts
from .supabase_client import PostgrestFilter, SupabaseClient, or_filter

_ACTIVE = [s.value for s in ACTIVE_STATES]


def _connection_to_row(conn: Connection) -> dict[str, Any]:
    return {
        "id": conn.id,
        "initiator_tenant_id": conn.initiator_tenant_id,
        "initiator_user_id": conn.initiator_user_id,
        "connection_type": conn.connection_type,
        "token_hash": conn.token_hash,
        "recipient_tenant_id": conn.recipient_tenant_id,
        "recipient_profile_id": conn.recipient_profile_id,
        "recipient_email": conn.recipient_email,
        "status": conn.state.value,
        "expires_at": iso(conn.expires_at),
        "created_at": iso(conn.created_at),
    }


def _row_to_connection(row: dict[str, Any]) -> Connection:
    return Connection(
        id=row["id"],
        initiator_tenant_id=row["initiator_tenant_id"],
        initiator_user_id=row.get("initiator_user_id"),
        connection_type=row["connection_type"],
        token_hash=row["token_hash"],
        recipient_tenant_id=row.get("recipient_tenant_id"),
        recipient_profile_id=row.get("recipient_profile_id"),
        recipient_email=row.get("recipient_email"),
        state=ConnectionState(row["status"]),
        reject_reason=row.get("reject_reason"),
        expires_at=parse_ts(row.get("expires_at")),
        created_at=parse_ts(row["created_at"]),
        responded_at=parse_ts(row.get("responded_at")),
        revoked_at=parse_ts(row.get("revoked_at")),
        revoked_by=row.get("revoked_by"),
    )


def _recipient_filter(recipient_key: str) -> dict[str, Any]:
    kind, _, value = recipient_key.partition(":")
    column = {
        "tenant": "recipient_tenant_id",
        "profile": "recipient_profile_id",
        "email": "recipient_email",
    }[kind]
    return {column: value}


class SupabaseConnectionRepository:
    TABLE = "connections"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def create(self, connection: Connection) -> Connection:
        try:
            rows = await self._client.insert(self.TABLE, _connection_to_row(connection))
        except SupabaseConflictError as exc:
            raise DuplicateActive(exc.details or "unknown") from exc
        return _row_to_connection(rows[0])

    async def get(self, connection_id: str) -> Connection | None:
        rows = await self._client.select(self.TABLE, {"id": connection_id}, limit=1)
        return _row_to_connection(rows[0]) if rows else None

    async def get_by_token_hash(self, token_hash: str) -> Connection | None:
        rows = await self._client.select(self.TABLE, {"token_hash": token_hash}, limit=1)
        return _row_to_connection(rows[0]) if rows else None

    async def find_open(
        self, initiator_tenant_id: str, recipient_key: str, connection_type: str,
    ) -> list[Connection]:
        filters = {
            "initiator_tenant_id": initiator_tenant_id,
            "connection_type": connection_type,
            "status": ("in", _ACTIVE),
            **_recipient_filter(recipient_key),
        }
        rows = await self._client.select(self.TABLE, filters)
        return [_row_to_connection(r) for r in rows]

    async def list_for_tenant(self, tenant_id: str) -> list[Connection]:
        rows = await self._client.select(
            self.TABLE,
            extra_params=[or_filter(
                PostgrestFilter("initiator_tenant_id", "eq", tenant_id),
                PostgrestFilter("recipient_tenant_id", "eq", tenant_id),
            )],
            order="created_at.desc",
        )
        return [_row_to_connection(r) for r in rows]

    async def list_pending_expired(self, now: datetime) -> list[Connection]:
        rows = await self._client.select(
            self.TABLE,
            [
                PostgrestFilter("status", "eq", ConnectionState.PENDING.value),
                PostgrestFilter("expires_at", "lte", iso(now)),
            ],
        )
        return [_row_to_connection(r) for r in rows]

    async def transition(
        self,
        connection_id: str,
        from_state: ConnectionState,
        to_state: ConnectionState,
        **fields: Any,
    ) -> Connection | None:
        data = {
            k: iso(v) if isinstance(v, datetime) else v
            for k, v in fields.items()
        }
        data["status"] = to_state.value
        rows = await self._client.update(
            self.TABLE,
            {"id": connection_id, "status": from_state.value},
            data,
        )
        return _row_to_connection(rows[0]) if rows else None


# ── Grants ───────────────────────────────────────────────────────────


def _grant_to_row(grant: ConsentGrant) -> dict[str, Any]:
    return {
        "id": grant.id,
        "connection_id": grant.connection_id,
        "grantor_tenant_id": grant.grantor_tenant_id,
        "grantee_tenant_id": grant.grantee_tenant_id,
        "grantee_profile_id": grant.grantee_profile_id,
        "resource_type": grant.resource_type,
        "access_level": grant.access_level,
        "date_from": iso(grant.date_from),
        "date_to": iso(grant.date_to),
        "forward_only": grant.forward_only,
        "resource_ids": list(grant.resource_ids) if grant.resource_ids is not None else None,
        "expires_at": iso(grant.expires_at),
        "status": grant.state.value,
        "created_by": grant.created_by,
        "created_at": iso(grant.created_at),
    }


def _row_to_grant(row: dict[str, Any]) -> ConsentGrant:
    resource_ids = row.get("resource_ids")
    return ConsentGrant(
        id=row["id"],
        connection_id=row["connection_id"],
        grantor_tenant_id=row["grantor_tenant_id"],
        grantee_tenant_id=row.get("grantee_tenant_id"),
        grantee_profile_id=row.get("grantee_profile_id"),
        resource_type=row["resource_type"],
        access_level=row.get("access_level") or "read",
        date_from=parse_day(row.get("date_from")),
        date_to=parse_day(row.get("date_to")),
        forward_only=bool(row.get("forward_only")),
        resource_ids=tuple(resource_ids) if resource_ids is not None else None,
        expires_at=parse_ts(row.get("expires_at")),
        state=GrantState(row.get("status") or GrantState.ACTIVE.value),
        created_by=row.get("created_by"),
        created_at=parse_ts(row["created_at"]),
        revoked_at=parse_ts(row.get("revoked_at")),
    )


class SupabaseGrantRepository:
    TABLE = "consent_grants"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def create(self, grant: ConsentGrant) -> ConsentGrant:
        rows = await self._client.insert(self.TABLE, _grant_to_row(grant))
        return _row_to_grant(rows[0])

    async def get(self, grant_id: str) -> ConsentGrant | None:
        rows = await self._client.select(self.TABLE, {"id": grant_id}, limit=1)
        return _row_to_grant(rows[0]) if rows else None

    async def list_for_connection(self, connection_id: str) -> list[ConsentGrant]:
        rows = await self._client.select(
            self.TABLE, {"connection_id": connection_id}, order="created_at.asc",
        )
        return [_row_to_grant(r) for r in rows]

    async def mark_revoked(self, grant_id: str, revoked_at: datetime) -> ConsentGrant | None:
        rows = await self._client.update(
            self.TABLE,
            {"id": grant_id, "status": GrantState.ACTIVE.value},
            {"status": GrantState.REVOKED.value, "revoked_at": iso(revoked_at)},
        )
        return _row_to_grant(rows[0]) if rows else None
