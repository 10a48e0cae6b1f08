"""Supabase-backed ShareTokenRepository.

Each subject kind has its own table:

  horse       → ``horse_shares``       (subject column ``horse_id``)
  lab_result  → ``lab_result_shares``  (subject column ``result_id``)
  media       → ``media_share_links``  (subject column ``asset_id``)

Security invariants:
  - Only ``token_hash`` is written; the plaintext never reaches a table.
  - Revocation is a conditional PATCH (``status=eq.active``), so concurrent
    revokes produce exactly one transition.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from ..scope import ScopeDescriptor
from ..sharing.model import ShareState, ShareToken, SubjectKind
from .rows import iso, parse_day, parse_ts
from .supabase_client import SupabaseClient


@dataclass(frozen=True, slots=True)
class ShareTable:
    name: str
    subject_column: str


SHARE_TABLES: Mapping[SubjectKind, ShareTable] = MappingProxyType({
    SubjectKind.HORSE: ShareTable("horse_shares", "horse_id"),
    SubjectKind.LAB_RESULT: ShareTable("lab_result_shares", "result_id"),
    SubjectKind.MEDIA: ShareTable("media_share_links", "asset_id"),
})


def _share_to_row(share: ShareToken, table: ShareTable) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": share.id,
        "tenant_id": share.tenant_id,
        table.subject_column: share.subject_id,
        "token_hash": share.token_hash,
        "token_prefix": share.token_prefix,
        "created_by": share.created_by,
        "expires_at": iso(share.expires_at),
        "status": share.status,
        "created_at": iso(share.created_at),
    }
    if share.kind is SubjectKind.HORSE:
        row.update({
            "pack_key": share.pack_key,
            "scope": share.custom_scope.to_dict() if share.custom_scope else None,
            "date_from": iso(share.date_from),
            "date_to": iso(share.date_to),
            "recipient_email": share.recipient_email,
        })
    elif share.kind is SubjectKind.LAB_RESULT:
        row["use_alias"] = share.use_alias
    return row


def _row_to_share(row: dict[str, Any], kind: SubjectKind) -> ShareToken:
    table = SHARE_TABLES[kind]
    kwargs: dict[str, Any] = {}
    created_at = parse_ts(row.get("created_at"))
    if created_at is not None:
        kwargs["created_at"] = created_at
    if kind is SubjectKind.HORSE:
        pack_key = row.get("pack_key")
        kwargs.update(
            pack_key=pack_key,
            # Fail closed: a custom share with no stored scope shows no categories.
            custom_scope=ScopeDescriptor.from_dict(row.get("scope")) if pack_key is None else None,
            date_from=parse_day(row.get("date_from")),
            date_to=parse_day(row.get("date_to")),
            recipient_email=row.get("recipient_email"),
        )
    elif kind is SubjectKind.LAB_RESULT:
        kwargs["use_alias"] = bool(row.get("use_alias"))
    return ShareToken(
        id=row["id"],
        tenant_id=row["tenant_id"],
        subject_id=row[table.subject_column],
        token_hash=row["token_hash"],
        token_prefix=row.get("token_prefix") or "",
        created_by=row.get("created_by") or "",
        subject_kind=kind.value,
        expires_at=parse_ts(row.get("expires_at")),
        status=row.get("status") or ShareState.ACTIVE.value,
        revoked_at=parse_ts(row.get("revoked_at")),
        **kwargs,
    )


class SupabaseShareTokenRepository:
    def __init__(
        self,
        client: SupabaseClient,
        tables: Mapping[SubjectKind, ShareTable] = SHARE_TABLES,
    ) -> None:
        self._client = client
        self._tables = tables

    async def create(self, share: ShareToken) -> ShareToken:
        table = self._tables[share.kind]
        rows = await self._client.insert(table.name, _share_to_row(share, table))
        return _row_to_share(rows[0], share.kind)

    async def get(
        self, share_id: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        rows = await self._client.select(self._tables[kind].name, {"id": share_id}, limit=1)
        return _row_to_share(rows[0], kind) if rows else None

    async def get_by_token_hash(
        self, token_hash: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        rows = await self._client.select(
            self._tables[kind].name, {"token_hash": token_hash}, limit=1,
        )
        return _row_to_share(rows[0], kind) if rows else None

    async def list_for_subject(
        self, tenant_id: str, subject_id: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> list[ShareToken]:
        table = self._tables[kind]
        rows = await self._client.select(
            table.name,
            {"tenant_id": tenant_id, table.subject_column: subject_id},
            order="created_at.desc",
        )
        return [_row_to_share(r, kind) for r in rows]

    async def mark_revoked(
        self, share_id: str, revoked_at: datetime, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        rows = await self._client.update(
            self._tables[kind].name,
            {"id": share_id, "status": ShareState.ACTIVE.value},
            {"status": ShareState.REVOKED.value, "revoked_at": iso(revoked_at)},
        )
        return _row_to_share(rows[0], kind) if rows else None
