"""Supabase implementations of the collaborator protocols.

The sharing core reads horses, their records, lab results, media assets,
memberships and tenant types from tables owned by the rest of the
application. Nothing here writes; media links are signed through Storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from types import MappingProxyType
from typing import Any, Mapping

from ..scope import Capability
from .supabase_client import PostgrestFilter, SupabaseClient, or_filter

MANAGER_ROLES = ("owner", "manager")


@dataclass(frozen=True, slots=True)
class RecordSource:
    """Where one category's records live and how they point at a horse.

    With several ``subject_columns`` a record matches if any of them does.
    """

    table: str
    subject_columns: tuple[str, ...] = ("horse_id",)
    columns: str = "*"
    fixed_filters: tuple[tuple[str, Any], ...] = ()


DEFAULT_RECORD_SOURCES: Mapping[Capability, RecordSource] = MappingProxyType({
    Capability.VETERINARY: RecordSource("vet_treatments"),
    Capability.LABORATORY: RecordSource(
        "lab_results",
        subject_columns=("sample.horse_id",),
        columns="*,sample:lab_samples!inner(horse_id)",
    ),
    Capability.FILES: RecordSource(
        "media_assets",
        subject_columns=("entity_id",),
        fixed_filters=(("entity_type", "horse"),),
    ),
    Capability.BREEDING: RecordSource(
        "breeding_attempts",
        subject_columns=("mare_id", "stallion_id"),
    ),
})


class SupabaseSubjectDirectory:
    TABLE = "horses"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_subject(self, subject_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            self.TABLE,
            {"id": subject_id},
            columns="id,tenant_id,name,name_ar,gender,birth_date,avatar_url,status,tenant:tenants(name)",
            limit=1,
        )
        if not rows:
            return None
        row = dict(rows[0])
        tenant = row.pop("tenant", None) or {}
        row["tenant_name"] = tenant.get("name")
        return row


class SupabaseRecordStore:
    def __init__(
        self,
        client: SupabaseClient,
        sources: Mapping[Capability, RecordSource] = DEFAULT_RECORD_SOURCES,
    ) -> None:
        self._client = client
        self._sources = sources

    async def fetch_records(
        self,
        category: Capability,
        subject_id: str,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        source = self._sources[category]
        filters = [PostgrestFilter(col, "eq", val) for col, val in source.fixed_filters]
        extra: list[tuple[str, str]] = []
        if len(source.subject_columns) == 1:
            filters.append(PostgrestFilter(source.subject_columns[0], "eq", subject_id))
        else:
            extra.append(or_filter(*(
                PostgrestFilter(col, "eq", subject_id) for col in source.subject_columns
            )))
        if date_from is not None:
            filters.append(PostgrestFilter("created_at", "gte", date_from.isoformat()))
        if date_to is not None:
            # Inclusive upper day: strictly before the following midnight.
            filters.append(PostgrestFilter(
                "created_at", "lt", (date_to + timedelta(days=1)).isoformat(),
            ))
        return await self._client.select(
            source.table,
            filters,
            extra_params=extra,
            columns=source.columns,
            order="created_at.desc",
        )


class SupabaseSharingPermissions:
    """Membership from ``tenant_members``; owner/manager may manage sharing."""

    TABLE = "tenant_members"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def _role(self, actor_id: str, tenant_id: str) -> str | None:
        rows = await self._client.select(
            self.TABLE,
            {"tenant_id": tenant_id, "user_id": actor_id, "is_active": ("is", True)},
            columns="role",
            limit=1,
        )
        return rows[0].get("role") if rows else None

    async def is_member(self, actor_id: str, tenant_id: str) -> bool:
        return await self._role(actor_id, tenant_id) is not None

    async def can_manage_sharing(self, actor_id: str, tenant_id: str) -> bool:
        return await self._role(actor_id, tenant_id) in MANAGER_ROLES


class SupabaseTenantDirectory:
    TABLE = "tenants"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_tenant_type(self, tenant_id: str) -> str | None:
        rows = await self._client.select(self.TABLE, {"id": tenant_id}, columns="type", limit=1)
        return rows[0].get("type") if rows else None


class SupabaseShareableItems:
    """Lab results, horse aliases and media assets for single-item links.

    The horse name on a lab result comes from the sample: a walk-in sample
    carries ``horse_name`` only, a registered horse is joined through
    ``horse_id``.
    """

    LAB_RESULT_COLUMNS = (
        "id,tenant_id,status,created_at,flags,interpretation,result_data,"
        "template:lab_templates(name),"
        "sample:lab_samples(horse_id,horse_name,horse:horses(name)),"
        "tenant:tenants(name)"
    )

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get_lab_result(self, result_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            "lab_results", {"id": result_id}, columns=self.LAB_RESULT_COLUMNS, limit=1,
        )
        if not rows:
            return None
        row = dict(rows[0])
        template = row.pop("template", None) or {}
        sample = row.pop("sample", None) or {}
        horse = sample.get("horse") or {}
        tenant = row.pop("tenant", None) or {}
        row["template_name"] = template.get("name")
        row["horse_id"] = sample.get("horse_id")
        row["horse_name"] = horse.get("name") or sample.get("horse_name")
        row["tenant_name"] = tenant.get("name")
        return row

    async def get_horse_alias(self, tenant_id: str, horse_id: str) -> str | None:
        rows = await self._client.select(
            "horse_aliases",
            {"tenant_id": tenant_id, "horse_id": horse_id, "is_active": ("is", True)},
            columns="alias",
            order="created_at.desc",
            limit=1,
        )
        return rows[0].get("alias") if rows else None

    async def get_media_asset(self, asset_id: str) -> dict[str, Any] | None:
        rows = await self._client.select(
            "media_assets",
            {"id": asset_id},
            columns="id,tenant_id,bucket,path,filename,mime_type",
            limit=1,
        )
        return dict(rows[0]) if rows else None

    async def sign_media_url(self, bucket: str, path: str, expires_in: int) -> str:
        return await self._client.sign_object(bucket, path, expires_in)
