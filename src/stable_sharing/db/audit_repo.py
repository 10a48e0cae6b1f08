"""Supabase-backed SharingAuditLog over ``sharing_audit_log``.

Insert-only. Listing is newest first with ``created_at`` as the cursor and
covers rows where the tenant is either the owner or the counterparty.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..audit.log import (
    DEFAULT_PAGE_SIZE,
    AuditEventKind,
    SharingAuditEntry,
    clamp_page_size,
)
from .rows import iso, parse_ts
from .supabase_client import PostgrestFilter, SupabaseClient, or_filter


def _row_to_entry(row: dict[str, Any]) -> SharingAuditEntry:
    return SharingAuditEntry(
        id=row["id"],
        kind=AuditEventKind(row["event_type"]),
        tenant_id=row["tenant_id"],
        counterparty_tenant_id=row.get("counterparty_tenant_id"),
        actor_id=row.get("actor_id"),
        share_id=row.get("share_id"),
        connection_id=row.get("connection_id"),
        grant_id=row.get("grant_id"),
        resource_type=row.get("resource_type"),
        scope=row.get("scope") or {},
        detail=row.get("detail") or {},
        created_at=parse_ts(row["created_at"]),
    )


class SupabaseSharingAuditLog:
    TABLE = "sharing_audit_log"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def append(self, entry: SharingAuditEntry) -> SharingAuditEntry:
        await self._client.insert(self.TABLE, entry.to_dict())
        return entry

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        before: datetime | None = None,
    ) -> list[SharingAuditEntry]:
        filters = []
        if before is not None:
            filters.append(PostgrestFilter("created_at", "lt", iso(before)))
        rows = await self._client.select(
            self.TABLE,
            filters,
            extra_params=[or_filter(
                PostgrestFilter("tenant_id", "eq", tenant_id),
                PostgrestFilter("counterparty_tenant_id", "eq", tenant_id),
            )],
            order="created_at.desc",
            limit=clamp_page_size(limit),
        )
        return [_row_to_entry(r) for r in rows]
