"""Share pack catalog: named, reusable scope presets.

System packs are read-only seed data shared by every tenant. Tenant packs
are free-form and stored per tenant. A share references its pack by key,
and the key is resolved again on every read: if a tenant pack has been
deleted in the meantime, ``resolve`` returns None and the caller must deny
access rather than fall back to an unscoped view.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Protocol

from ..errors import InvalidScope, NotFound, ReadOnlyPack, Unauthorized
from ..protocols import SharingPermissions
from ..scope import Capability, ScopeDescriptor

_PACK_KEY_RE = re.compile(r'^[a-z0-9][a-z0-9_-]{0,63}$')


@dataclass(frozen=True, slots=True)
class SharePack:
    """Catalog entry matching the horse_share_packs row."""

    key: str
    name: str
    scope: ScopeDescriptor
    tenant_id: str | None = None
    description: str | None = None
    is_system: bool = False
    id: str = field(default_factory=lambda: f'pck_{uuid.uuid4().hex}')
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'scope': self.scope.to_dict(),
            'is_system': self.is_system,
            'tenant_id': self.tenant_id,
        }


def _system(key: str, name: str, description: str, *caps: Capability) -> SharePack:
    return SharePack(
        id=f'pck_system_{key}',
        key=key,
        name=name,
        description=description,
        scope=ScopeDescriptor.of(caps),
        is_system=True,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


SYSTEM_PACKS: Mapping[str, SharePack] = MappingProxyType({
    pack.key: pack
    for pack in (
        _system('summary', 'Summary', 'Identifying details only.'),
        _system('vet-only', 'Veterinary', 'Veterinary treatments.',
                Capability.VETERINARY),
        _system('lab-only', 'Laboratory', 'Laboratory results.',
                Capability.LABORATORY),
        _system('medical', 'Medical', 'Veterinary and laboratory history.',
                Capability.VETERINARY, Capability.LABORATORY),
        _system('full', 'Full report', 'Medical history and attached files.',
                Capability.VETERINARY, Capability.LABORATORY, Capability.FILES),
    )
})

# Used when a share is created without a pack or a custom scope.
MOST_RESTRICTIVE_PACK_KEY = 'summary'


# ── Storage protocol ─────────────────────────────────────────────────


class SharePackStore(Protocol):
    """Tenant-authored pack storage (system packs are not stored here)."""

    async def get(self, tenant_id: str, key: str) -> SharePack | None: ...
    async def list_for_tenant(self, tenant_id: str) -> list[SharePack]: ...
    async def upsert(self, pack: SharePack) -> SharePack: ...
    async def delete(self, tenant_id: str, key: str) -> bool: ...


class InMemorySharePackStore:
    def __init__(self) -> None:
        self._packs: dict[tuple[str, str], SharePack] = {}

    async def get(self, tenant_id: str, key: str) -> SharePack | None:
        return self._packs.get((tenant_id, key))

    async def list_for_tenant(self, tenant_id: str) -> list[SharePack]:
        return sorted(
            (p for (t, _), p in self._packs.items() if t == tenant_id),
            key=lambda p: p.created_at,
        )

    async def upsert(self, pack: SharePack) -> SharePack:
        if pack.tenant_id is None:
            raise ValueError('system packs are not stored')
        existing = self._packs.get((pack.tenant_id, pack.key))
        if existing is not None:
            pack = replace(pack, id=existing.id, created_at=existing.created_at)
        self._packs[(pack.tenant_id, pack.key)] = pack
        return pack

    async def delete(self, tenant_id: str, key: str) -> bool:
        return self._packs.pop((tenant_id, key), None) is not None


# ── Catalog ──────────────────────────────────────────────────────────


class SharePackCatalog:
    """System seed packs merged with a tenant's own packs."""

    def __init__(
        self,
        store: SharePackStore,
        permissions: SharingPermissions,
        system_packs: Mapping[str, SharePack] = SYSTEM_PACKS,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._system = system_packs

    async def resolve(self, tenant_id: str, key: str) -> SharePack | None:
        """Current pack for ``key`` as seen by ``tenant_id``; None if gone."""
        system = self._system.get(key)
        if system is not None:
            return system
        return await self._store.get(tenant_id, key)

    async def list_packs(self, tenant_id: str, actor_id: str) -> list[SharePack]:
        if not await self._permissions.is_member(actor_id, tenant_id):
            raise Unauthorized('not a member of this tenant')
        return [*self._system.values(), *await self._store.list_for_tenant(tenant_id)]

    async def save_pack(
        self,
        tenant_id: str,
        actor_id: str,
        *,
        key: str,
        name: str,
        scope: ScopeDescriptor,
        description: str | None = None,
    ) -> SharePack:
        """Create or replace a tenant pack.

        Existing shares pick up the new scope on their next read, since
        they reference the pack by key.
        """
        await self._require_manager(actor_id, tenant_id)
        self._check_key(key)
        if not name.strip():
            raise InvalidScope('pack name is required')
        return await self._store.upsert(SharePack(
            key=key,
            name=name.strip(),
            description=description,
            scope=scope,
            tenant_id=tenant_id,
        ))

    async def delete_pack(self, tenant_id: str, actor_id: str, key: str) -> None:
        await self._require_manager(actor_id, tenant_id)
        self._check_key(key)
        if not await self._store.delete(tenant_id, key):
            raise NotFound(f'pack {key!r} not found')

    def _check_key(self, key: str) -> None:
        if not _PACK_KEY_RE.match(key or ''):
            raise InvalidScope(f'invalid pack key {key!r}')
        if key in self._system:
            raise ReadOnlyPack(f'pack {key!r} is a system pack')

    async def _require_manager(self, actor_id: str, tenant_id: str) -> None:
        if not await self._permissions.can_manage_sharing(actor_id, tenant_id):
            raise Unauthorized('sharing management capability required')
