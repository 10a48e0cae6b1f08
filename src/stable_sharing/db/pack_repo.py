"""Supabase-backed SharePackStore over ``horse_share_packs``.

Only tenant packs live in the table as far as this store is concerned;
rows with ``is_system`` set are ignored because the catalog serves system
packs from code.
"""

from __future__ import annotations

from typing import Any

from ..scope import ScopeDescriptor
from ..sharing.packs import SharePack
from .rows import iso, parse_ts
from .supabase_client import SupabaseClient


def _row_to_pack(row: dict[str, Any]) -> SharePack:
    kwargs: dict[str, Any] = {}
    created_at = parse_ts(row.get("created_at"))
    if created_at is not None:
        kwargs["created_at"] = created_at
    if row.get("id"):
        kwargs["id"] = row["id"]
    return SharePack(
        key=row["key"],
        name=row.get("name") or row["key"],
        description=row.get("description"),
        scope=ScopeDescriptor.from_dict(row.get("scope")),
        tenant_id=row.get("tenant_id"),
        is_system=False,
        **kwargs,
    )


class SupabaseSharePackStore:
    TABLE = "horse_share_packs"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get(self, tenant_id: str, key: str) -> SharePack | None:
        rows = await self._client.select(
            self.TABLE,
            {"tenant_id": tenant_id, "key": key, "is_system": ("is", False)},
            limit=1,
        )
        return _row_to_pack(rows[0]) if rows else None

    async def list_for_tenant(self, tenant_id: str) -> list[SharePack]:
        rows = await self._client.select(
            self.TABLE,
            {"tenant_id": tenant_id, "is_system": ("is", False)},
            order="created_at.asc",
        )
        return [_row_to_pack(r) for r in rows]

    async def upsert(self, pack: SharePack) -> SharePack:
        if pack.tenant_id is None:
            raise ValueError("system packs are not stored")
        rows = await self._client.insert(
            self.TABLE,
            {
                "tenant_id": pack.tenant_id,
                "key": pack.key,
                "name": pack.name,
                "description": pack.description,
                "scope": pack.scope.to_dict(),
                "is_system": False,
                "created_at": iso(pack.created_at),
            },
            upsert=True,
            on_conflict="tenant_id,key",
        )
        return _row_to_pack(rows[0])

    async def delete(self, tenant_id: str, key: str) -> bool:
        rows = await self._client.delete(
            self.TABLE,
            {"tenant_id": tenant_id, "key": key, "is_system": ("is", False)},
        )
        return bool(rows)
