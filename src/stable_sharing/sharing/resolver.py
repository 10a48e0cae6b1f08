"""Read-time resolution of share tokens and consent grants.

``resolve_share_view`` is the public, unauthenticated path. Its ordering is
load-bearing:

  1. Look the token up by hash.
  2. Check revocation and expiry against the clock, before anything else
     is read.
  3. Re-resolve the pack by key. A pack that no longer exists denies.
  4. Narrow the scope: pack or custom scope, then the share's date window,
     then whatever the recipient asked for. Scopes only ever intersect.
  5. Fetch only the enabled categories, and drop anything outside the
     window that the record store returned anyway.
  6. Project the subject down to its identifying fields.
  7. Append exactly one ``accessed`` audit entry with the applied scope.

Every denial on the public path is ``NotFoundOrRevoked`` with no detail.
Nothing is appended to the audit log for a denial.

``resolve_lab_result_share`` and ``resolve_media_share`` follow the same
first two steps for single-item links. A lab result must still be final
and owned by the sharing tenant; a media link yields a signed storage URL.

``resolve_grant_view`` is the authenticated partner path. Callers there
already know what they asked for, so denials carry precise errors.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from ..audit import AuditEventKind, SharingAuditEntry, SharingAuditLog
from ..connections.model import (
    ConnectionRepository,
    ConsentGrant,
    GrantRepository,
    is_grant_effective,
)
from ..errors import (
    InvalidState,
    NotFound,
    NotFoundOrRevoked,
    SharingError,
    StoreError,
    StoreUnavailable,
    Unauthorized,
)
from ..observability import record_resolution
from ..protocols import RecordStore, ShareableItems, SharingPermissions, SubjectDirectory
from ..scope import Capability, ScopeDescriptor, parse_date, record_day
from ..settings import DEFAULT_RESOLVE_TIMEOUT_SECONDS
from .model import (
    FINAL_RESULT_STATUS,
    ShareToken,
    ShareTokenRepository,
    SubjectKind,
    hash_token,
    is_share_effective,
)
from .packs import SharePackCatalog

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Subject fields a recipient may always see.
IDENTIFYING_FIELDS = (
    'id',
    'name',
    'name_ar',
    'gender',
    'birth_date',
    'avatar_url',
    'status',
    'tenant_name',
)

# Response key for each category's records.
CATEGORY_KEYS: Mapping[Capability, str] = MappingProxyType({
    Capability.VETERINARY: 'vet_treatments',
    Capability.LABORATORY: 'lab_results',
    Capability.FILES: 'files',
    Capability.BREEDING: 'breeding_records',
})

# Lifetime of the storage URL handed out for a media link.
SIGNED_URL_TTL_SECONDS = 3600


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


# ── Results ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ShareView:
    """A resolved share: metadata, applied scope and the projection."""

    share: ShareToken
    scope: ScopeDescriptor
    subject: dict[str, Any]
    records: dict[Capability, list[dict[str, Any]]]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {'horse': self.subject}
        for cap, rows in self.records.items():
            data[CATEGORY_KEYS[cap]] = rows
        return {
            'success': True,
            'share': {
                'id': self.share.id,
                'date_from': _iso(self.scope.date_from),
                'date_to': _iso(self.scope.date_to),
                'expires_at': _iso(self.share.expires_at),
                'scope': self.scope.to_dict(),
            },
            'data': data,
        }


@dataclass(frozen=True, slots=True)
class GrantView:
    grant: ConsentGrant
    scope: ScopeDescriptor
    subject: dict[str, Any]
    records: list[dict[str, Any]]

    @property
    def reshare_allowed(self) -> bool:
        return not self.grant.forward_only

    def to_dict(self) -> dict[str, Any]:
        return {
            'success': True,
            'grant': {
                'id': self.grant.id,
                'connection_id': self.grant.connection_id,
                'resource_type': self.grant.resource_type,
                'access_level': self.grant.access_level,
                'forward_only': self.grant.forward_only,
                'reshare_allowed': self.reshare_allowed,
                'effective_from': _iso(self.scope.date_from),
                'effective_to': _iso(self.scope.date_to),
                'scope': self.scope.to_dict(),
            },
            'data': {
                'horse': self.subject,
                CATEGORY_KEYS[self.grant.capability]: self.records,
            },
        }


@dataclass(frozen=True, slots=True)
class LabResultShareView:
    """One finalized lab result opened through its share link."""

    share: ShareToken
    result: dict[str, Any]
    horse_display_name: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            'success': True,
            'share': {
                'id': self.share.id,
                'expires_at': _iso(self.share.expires_at),
                'use_alias': self.share.use_alias,
            },
            'data': {
                'result_id': self.result.get('id'),
                'status': self.result.get('status'),
                'created_at': self.result.get('created_at'),
                'flags': self.result.get('flags'),
                'interpretation': self.result.get('interpretation'),
                'result_data': self.result.get('result_data'),
                'template_name': self.result.get('template_name'),
                'horse_display_name': self.horse_display_name,
                'tenant_display_name': self.result.get('tenant_name'),
            },
        }


@dataclass(frozen=True, slots=True)
class MediaShareView:
    """A media asset link: a short-lived signed URL, never the object path."""

    share: ShareToken
    signed_url: str
    filename: str | None
    mime_type: str | None
    url_expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {
            'success': True,
            'share': {
                'id': self.share.id,
                'expires_at': _iso(self.share.expires_at),
            },
            'data': {
                'signed_url': self.signed_url,
                'filename': self.filename,
                'mime_type': self.mime_type,
                'url_expires_in': self.url_expires_in,
            },
        }


# ── Resolver ─────────────────────────────────────────────────────────


class ShareViewResolver:
    def __init__(
        self,
        shares: ShareTokenRepository,
        catalog: SharePackCatalog,
        subjects: SubjectDirectory,
        records: RecordStore,
        audit: SharingAuditLog,
        *,
        connections: ConnectionRepository | None = None,
        grants: GrantRepository | None = None,
        permissions: SharingPermissions | None = None,
        items: ShareableItems | None = None,
        timeout_seconds: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._shares = shares
        self._catalog = catalog
        self._subjects = subjects
        self._records = records
        self._audit = audit
        self._connections = connections
        self._grants = grants
        self._permissions = permissions
        self._items = items
        self._timeout = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Public share path ────────────────────────────────────────────

    async def resolve_share_view(
        self,
        token: str,
        *,
        requested: ScopeDescriptor | None = None,
        timeout: float | None = None,
    ) -> ShareView:
        """Resolve a share token to its permitted projection.

        Raises:
            NotFoundOrRevoked: unknown, revoked or expired token, missing
                pack, or a subject that no longer belongs to the owner.
            StoreUnavailable: the read timed out or the store failed.
                Retryable.
        """
        view = await self._bounded('share', self._read_share(token, requested), timeout)
        await self._append_access('share', SharingAuditEntry(
            kind=AuditEventKind.ACCESSED,
            tenant_id=view.share.tenant_id,
            share_id=view.share.id,
            scope=view.scope.to_dict(),
            detail=self._access_detail(view.records, token_prefix=view.share.token_prefix),
            created_at=self._clock(),
        ))
        record_resolution('share', 'ok')
        return view

    async def _read_share(
        self, token: str, requested: ScopeDescriptor | None,
    ) -> ShareView:
        share = await self._lookup(token, SubjectKind.HORSE)
        if share.pack_key is not None:
            pack = await self._catalog.resolve(share.tenant_id, share.pack_key)
            if pack is None:
                logger.warning(
                    'Share %s references missing pack %r; denying',
                    share.id, share.pack_key,
                )
                raise NotFoundOrRevoked()
            base = pack.scope
        elif share.custom_scope is not None:
            base = share.custom_scope
        else:
            raise NotFoundOrRevoked()

        scope = base.intersect(share.window).intersect(requested)

        subject = await self._subjects.get_subject(share.subject_id)
        if subject is None or subject.get('tenant_id') != share.tenant_id:
            raise NotFoundOrRevoked()

        records = {
            cap: await self._fetch(cap, share.subject_id, scope)
            for cap in Capability
            if scope.includes(cap)
        }
        return ShareView(
            share=share,
            scope=scope,
            subject=_project(subject),
            records=records,
        )

    # ── Record share paths ───────────────────────────────────────────

    async def resolve_lab_result_share(
        self, token: str, *, timeout: float | None = None,
    ) -> LabResultShareView:
        """Resolve a lab result link. Denials are ``NotFoundOrRevoked``.

        The horse is shown by its active alias when the share asks for one
        and an alias exists, otherwise by name.
        """
        view = await self._bounded('share', self._read_lab_result(token), timeout)
        await self._append_item_access(view.share)
        record_resolution('share', 'ok')
        return view

    async def _read_lab_result(self, token: str) -> LabResultShareView:
        items = self._require_items()
        share = await self._lookup(token, SubjectKind.LAB_RESULT)
        result = await items.get_lab_result(share.subject_id)
        if (
            result is None
            or result.get('tenant_id') != share.tenant_id
            or result.get('status') != FINAL_RESULT_STATUS
        ):
            raise NotFoundOrRevoked()
        display_name = result.get('horse_name')
        if share.use_alias and result.get('horse_id'):
            alias = await items.get_horse_alias(share.tenant_id, result['horse_id'])
            if alias:
                display_name = alias
        return LabResultShareView(share=share, result=result, horse_display_name=display_name)

    async def resolve_media_share(
        self, token: str, *, timeout: float | None = None,
    ) -> MediaShareView:
        """Resolve a media link to a signed URL valid for ``SIGNED_URL_TTL_SECONDS``."""
        view = await self._bounded('share', self._read_media(token), timeout)
        await self._append_item_access(view.share)
        record_resolution('share', 'ok')
        return view

    async def _read_media(self, token: str) -> MediaShareView:
        items = self._require_items()
        share = await self._lookup(token, SubjectKind.MEDIA)
        asset = await items.get_media_asset(share.subject_id)
        if asset is None or asset.get('tenant_id') != share.tenant_id:
            raise NotFoundOrRevoked()
        signed_url = await items.sign_media_url(
            asset['bucket'], asset['path'], SIGNED_URL_TTL_SECONDS,
        )
        return MediaShareView(
            share=share,
            signed_url=signed_url,
            filename=asset.get('filename'),
            mime_type=asset.get('mime_type'),
            url_expires_in=SIGNED_URL_TTL_SECONDS,
        )

    async def _append_item_access(self, share: ShareToken) -> None:
        await self._append_access('share', SharingAuditEntry(
            kind=AuditEventKind.ACCESSED,
            tenant_id=share.tenant_id,
            share_id=share.id,
            detail={
                'subject_kind': share.subject_kind,
                'subject_id': share.subject_id,
                'token_prefix': share.token_prefix,
            },
            created_at=self._clock(),
        ))

    def _require_items(self) -> ShareableItems:
        if self._items is None:
            raise RuntimeError('record shares require a shareable item store')
        return self._items

    # ── Partner grant path ───────────────────────────────────────────

    async def resolve_grant_view(
        self,
        grant_id: str,
        actor_id: str,
        subject_id: str,
        *,
        date_from: date | str | None = None,
        date_to: date | str | None = None,
        timeout: float | None = None,
    ) -> GrantView:
        """Read one grantor subject's records under a consent grant.

        Raises:
            NotFound: unknown grant, or a subject the grantor does not own.
            Unauthorized: actor is not on the grantee side, or the grant
                pins resource ids that exclude the subject.
            InvalidState: the grant is not effective right now.
            StoreUnavailable: the read timed out or the store failed.
        """
        if self._grants is None or self._connections is None or self._permissions is None:
            raise RuntimeError('grant resolution requires grant, connection and permission stores')
        view = await self._bounded(
            'grant',
            self._read_grant(grant_id, actor_id, subject_id, parse_date(date_from), parse_date(date_to)),
            timeout,
        )
        await self._append_access('grant', SharingAuditEntry(
            kind=AuditEventKind.ACCESSED,
            tenant_id=view.grant.grantor_tenant_id,
            counterparty_tenant_id=view.grant.grantee_tenant_id,
            actor_id=actor_id,
            connection_id=view.grant.connection_id,
            grant_id=view.grant.id,
            resource_type=view.grant.resource_type,
            scope=view.scope.to_dict(),
            detail=self._access_detail(
                {view.grant.capability: view.records}, subject_id=subject_id,
            ),
            created_at=self._clock(),
        ))
        record_resolution('grant', 'ok')
        return view

    async def _read_grant(
        self,
        grant_id: str,
        actor_id: str,
        subject_id: str,
        date_from: date | None,
        date_to: date | None,
    ) -> GrantView:
        grant = await self._grants.get(grant_id)
        if grant is None:
            raise NotFound(f'grant {grant_id} not found')
        connection = await self._connections.get(grant.connection_id)
        if not await self._is_grantee(grant, actor_id):
            raise Unauthorized('not on the receiving side of this grant')
        if not is_grant_effective(grant, connection, self._clock()):
            raise InvalidState(f'grant {grant_id} is not in effect')
        if grant.resource_ids is not None and subject_id not in grant.resource_ids:
            raise Unauthorized('grant does not cover this subject')

        subject = await self._subjects.get_subject(subject_id)
        if subject is None or subject.get('tenant_id') != grant.grantor_tenant_id:
            raise NotFound(f'subject {subject_id} not found')

        # The grant's own bounds cap the window; the request can only narrow it.
        scope = ScopeDescriptor.of(
            [grant.capability], date_from=grant.date_from, date_to=grant.date_to,
        ).with_window(date_from, date_to)
        records = [] if scope.is_empty else await self._fetch(grant.capability, subject_id, scope)
        return GrantView(
            grant=grant,
            scope=scope,
            subject=_project(subject),
            records=records,
        )

    async def _is_grantee(self, grant: ConsentGrant, actor_id: str) -> bool:
        if grant.grantee_profile_id is not None and grant.grantee_profile_id == actor_id:
            return True
        if grant.grantee_tenant_id is None:
            return False
        return await self._permissions.is_member(actor_id, grant.grantee_tenant_id)

    # ── Shared steps ─────────────────────────────────────────────────

    async def _lookup(self, token: str, kind: SubjectKind) -> ShareToken:
        """Hash lookup plus revocation and expiry, checked before any other read."""
        if not token:
            raise NotFoundOrRevoked()
        share = await self._shares.get_by_token_hash(hash_token(token), kind)
        if share is None or not is_share_effective(share, self._clock()):
            raise NotFoundOrRevoked()
        return share

    async def _fetch(
        self, cap: Capability, subject_id: str, scope: ScopeDescriptor,
    ) -> list[dict[str, Any]]:
        rows = await self._records.fetch_records(
            cap, subject_id, date_from=scope.date_from, date_to=scope.date_to,
        )
        bounded = scope.date_from is not None or scope.date_to is not None
        result = []
        for row in rows:
            day = record_day(row)
            if day is None:
                if bounded:
                    continue
            elif not scope.contains(day):
                continue
            result.append(row)
        return result

    async def _bounded(self, kind: str, work: Awaitable[T], timeout: float | None) -> T:
        """Run the read phase under the caller's timeout and count outcomes.

        Any store failure leaves here as ``StoreUnavailable``.
        """
        limit = self._timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(work, limit)
        except asyncio.TimeoutError as exc:
            record_resolution(kind, 'error')
            logger.warning('%s resolution timed out after %.2fs', kind, limit)
            raise StoreUnavailable(f'{kind} resolution timed out') from exc
        except StoreUnavailable:
            record_resolution(kind, 'error')
            raise
        except StoreError as exc:
            record_resolution(kind, 'error')
            logger.warning('%s resolution failed in the store: %s', kind, exc.detail)
            raise StoreUnavailable(f'{kind} resolution failed') from exc
        except SharingError:
            record_resolution(kind, 'denied')
            raise

    async def _append_access(self, kind: str, entry: SharingAuditEntry) -> None:
        try:
            await self._audit.append(entry)
        except Exception as exc:
            record_resolution(kind, 'error')
            logger.exception('Audit append failed; withholding %s view', kind)
            raise StoreUnavailable('audit log unavailable') from exc

    @staticmethod
    def _access_detail(
        records: Mapping[Capability, list[dict[str, Any]]], **extra: Any,
    ) -> dict[str, Any]:
        detail: dict[str, Any] = {
            'record_counts': {CATEGORY_KEYS[cap]: len(rows) for cap, rows in records.items()},
        }
        detail.update({k: v for k, v in extra.items() if v})
        return detail


def _project(subject: Mapping[str, Any]) -> dict[str, Any]:
    return {field: subject.get(field) for field in IDENTIFYING_FIELDS}
