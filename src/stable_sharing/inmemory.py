"""In-memory collaborator implementations for local development and tests.

These satisfy the protocols in ``protocols.py`` but keep everything in
dicts (no persistence across restarts).
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

from .scope import Capability, record_day

logger = logging.getLogger(__name__)


class InMemorySubjectDirectory:
    def __init__(self) -> None:
        self._subjects: dict[str, dict[str, Any]] = {}

    def add_subject(self, subject_id: str, tenant_id: str, **fields: Any) -> dict[str, Any]:
        subject = {'id': subject_id, 'tenant_id': tenant_id, **fields}
        self._subjects[subject_id] = subject
        return subject

    async def get_subject(self, subject_id: str) -> dict[str, Any] | None:
        return self._subjects.get(subject_id)


class InMemoryRecordStore:
    """Records keyed by (category, subject). Counts fetches per category."""

    def __init__(self) -> None:
        self._records: dict[tuple[Capability, str], list[dict[str, Any]]] = {}
        self.fetch_calls: list[tuple[Capability, str]] = []

    def add_record(
        self, category: Capability, subject_id: str, record: dict[str, Any],
    ) -> dict[str, Any]:
        self._records.setdefault((category, subject_id), []).append(record)
        return record

    async def fetch_records(
        self,
        category: Capability,
        subject_id: str,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]:
        self.fetch_calls.append((category, subject_id))
        result = []
        for record in self._records.get((category, subject_id), []):
            day = record_day(record)
            if day is None:
                continue
            if date_from is not None and day < date_from:
                continue
            if date_to is not None and day > date_to:
                continue
            result.append(dict(record))
        return result


class InMemorySharingPermissions:
    """Members as (tenant_id, actor_id) pairs; managers are a subset."""

    def __init__(self) -> None:
        self._members: set[tuple[str, str]] = set()
        self._managers: set[tuple[str, str]] = set()

    def add_member(self, tenant_id: str, actor_id: str, *, manager: bool = False) -> None:
        self._members.add((tenant_id, actor_id))
        if manager:
            self._managers.add((tenant_id, actor_id))

    async def is_member(self, actor_id: str, tenant_id: str) -> bool:
        return (tenant_id, actor_id) in self._members

    async def can_manage_sharing(self, actor_id: str, tenant_id: str) -> bool:
        return (tenant_id, actor_id) in self._managers


class InMemoryTenantDirectory:
    def __init__(self, types: dict[str, str] | None = None) -> None:
        self._types: dict[str, str] = dict(types or {})

    def set_type(self, tenant_id: str, tenant_type: str) -> None:
        self._types[tenant_id] = tenant_type

    async def get_tenant_type(self, tenant_id: str) -> str | None:
        return self._types.get(tenant_id)


class InMemoryShareableItems:
    """Lab results, horse aliases and media assets held in dicts.

    ``sign_media_url`` returns a ``memory://`` URL and records the call.
    """

    def __init__(self) -> None:
        self._results: dict[str, dict[str, Any]] = {}
        self._aliases: dict[tuple[str, str], str] = {}
        self._assets: dict[str, dict[str, Any]] = {}
        self.signed: list[tuple[str, str, int]] = []

    def add_lab_result(
        self, result_id: str, tenant_id: str, *, status: str = 'final', **fields: Any,
    ) -> dict[str, Any]:
        result = {'id': result_id, 'tenant_id': tenant_id, 'status': status, **fields}
        self._results[result_id] = result
        return result

    def set_alias(self, tenant_id: str, horse_id: str, alias: str | None) -> None:
        if alias is None:
            self._aliases.pop((tenant_id, horse_id), None)
        else:
            self._aliases[(tenant_id, horse_id)] = alias

    def add_media_asset(
        self, asset_id: str, tenant_id: str, *, bucket: str, path: str, **fields: Any,
    ) -> dict[str, Any]:
        asset = {'id': asset_id, 'tenant_id': tenant_id, 'bucket': bucket, 'path': path, **fields}
        self._assets[asset_id] = asset
        return asset

    async def get_lab_result(self, result_id: str) -> dict[str, Any] | None:
        result = self._results.get(result_id)
        return dict(result) if result else None

    async def get_horse_alias(self, tenant_id: str, horse_id: str) -> str | None:
        return self._aliases.get((tenant_id, horse_id))

    async def get_media_asset(self, asset_id: str) -> dict[str, Any] | None:
        asset = self._assets.get(asset_id)
        return dict(asset) if asset else None

    async def sign_media_url(self, bucket: str, path: str, expires_in: int) -> str:
        self.signed.append((bucket, path, expires_in))
        return f'memory://{bucket}/{path}?expires_in={expires_in}'


class InMemoryNotifier:
    """Records notifications; logs them so local dev can see the flow."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        logger.info('notification event=%s payload_keys=%s', event, sorted(payload))
        self.sent.append((event, payload))
