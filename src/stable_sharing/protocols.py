"""Collaborator protocol interfaces for dependency injection.

The sharing core never stores horses, records, lab results, media or
memberships itself. It reaches them through these protocols; concrete
implementations (InMemory for local dev, Supabase for non-local) are chosen
by the app factory.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Protocol, runtime_checkable

from .scope import Capability


@runtime_checkable
class SubjectDirectory(Protocol):
    """Lookup of shareable subjects (horses) with their owning tenant."""

    async def get_subject(self, subject_id: str) -> dict[str, Any] | None: ...


@runtime_checkable
class RecordStore(Protocol):
    """Category-scoped record reads for one subject.

    Every returned record carries at least ``id`` and ``created_at``.
    """

    async def fetch_records(
        self,
        category: Capability,
        subject_id: str,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> list[dict[str, Any]]: ...


@runtime_checkable
class SharingPermissions(Protocol):
    """Identity collaborator: tenant membership and delegated capability."""

    async def is_member(self, actor_id: str, tenant_id: str) -> bool: ...
    async def can_manage_sharing(self, actor_id: str, tenant_id: str) -> bool: ...


@runtime_checkable
class TenantDirectory(Protocol):
    """Declared tenant type (stable, laboratory, clinic, ...)."""

    async def get_tenant_type(self, tenant_id: str) -> str | None: ...


@runtime_checkable
class Notifier(Protocol):
    """Downstream notification transport. Fire-and-forget from the core."""

    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...


@runtime_checkable
class ShareableItems(Protocol):
    """Single items that can be shared on their own link.

    ``get_lab_result`` returns the result with ``tenant_id``, ``status``,
    ``horse_id``, ``horse_name``, ``template_name`` and ``tenant_name``
    flattened in. ``get_media_asset`` returns ``tenant_id``, ``bucket``,
    ``path``, ``filename`` and ``mime_type``.
    """

    async def get_lab_result(self, result_id: str) -> dict[str, Any] | None: ...
    async def get_horse_alias(self, tenant_id: str, horse_id: str) -> str | None: ...
    async def get_media_asset(self, asset_id: str) -> dict[str, Any] | None: ...
    async def sign_media_url(self, bucket: str, path: str, expires_in: int) -> str: ...
