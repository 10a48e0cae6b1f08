"""Share-token issuance, revocation and listing.

Invariants enforced:
  1. The subject must belong to the owner tenant according to the subject
     directory; the caller's claim is not trusted.
  2. A share carries exactly one of a pack reference or a custom scope.
     Supplying neither selects the most restrictive system pack.
  3. Lab results and media assets are shared one item at a time; a lab
     result must be final.
  4. Revocation is monotonic and idempotent: only the first revoke writes
     and only the first revoke is audited.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable

from ..audit import (
    DEFAULT_PAGE_SIZE,
    TOKEN_PREFIX_LENGTH,
    AuditEventKind,
    SharingAuditEntry,
    SharingAuditLog,
    redact_token,
)
from ..errors import InvalidDateRange, InvalidScope, InvalidState, NotFound, Unauthorized
from ..protocols import ShareableItems, SharingPermissions, SubjectDirectory
from ..scope import ScopeDescriptor, check_date_range, parse_date, require_aware
from ..settings import DEFAULT_PUBLIC_BASE_URL
from .model import (
    FINAL_RESULT_STATUS,
    ShareState,
    ShareToken,
    ShareTokenRepository,
    SubjectKind,
    generate_share_token,
    hash_token,
    new_share_id,
    share_state,
    share_url,
)
from .packs import MOST_RESTRICTIVE_PACK_KEY, SharePackCatalog

logger = logging.getLogger(__name__)


# ── Request / result types ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class CreateShareOptions:
    """Either ``pack_key`` or ``custom_scope``; neither means the summary pack."""

    pack_key: str | None = None
    custom_scope: ScopeDescriptor | None = None
    date_from: date | str | None = None
    date_to: date | str | None = None
    recipient_email: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class IssuedShare:
    """A new share plus its plaintext token. The token is not stored."""

    share: ShareToken
    token: str
    url: str


@dataclass(frozen=True, slots=True)
class ListedShare:
    share: ShareToken
    state: ShareState


@dataclass(frozen=True, slots=True)
class ShareListing:
    active: list[ListedShare] = field(default_factory=list)
    inactive: list[ListedShare] = field(default_factory=list)


# ── Service ──────────────────────────────────────────────────────────


class ShareService:
    def __init__(
        self,
        shares: ShareTokenRepository,
        catalog: SharePackCatalog,
        subjects: SubjectDirectory,
        permissions: SharingPermissions,
        audit: SharingAuditLog,
        *,
        items: ShareableItems | None = None,
        public_base_url: str = DEFAULT_PUBLIC_BASE_URL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._shares = shares
        self._catalog = catalog
        self._subjects = subjects
        self._permissions = permissions
        self._audit = audit
        self._items = items
        self._public_base_url = public_base_url
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_share(
        self,
        subject_id: str,
        owner_tenant_id: str,
        actor_id: str,
        options: CreateShareOptions | None = None,
    ) -> IssuedShare:
        """Issue a new share token for one subject.

        Raises:
            Unauthorized: actor cannot manage sharing for the owner tenant.
            NotFound: subject is not the owner's, or the pack does not exist.
            InvalidScope: both a pack and a custom scope, or an empty pack key.
            InvalidDateRange: ``date_from`` after ``date_to``, or an
                ``expires_at`` that is naive or has already passed.
        """
        options = options or CreateShareOptions()
        if not await self._permissions.can_manage_sharing(actor_id, owner_tenant_id):
            raise Unauthorized('sharing management capability required')

        subject = await self._subjects.get_subject(subject_id)
        if subject is None or subject.get('tenant_id') != owner_tenant_id:
            raise NotFound(f'subject {subject_id} not found')

        pack_key = options.pack_key
        custom_scope = options.custom_scope
        if pack_key is not None and custom_scope is not None:
            raise InvalidScope('supply either pack_key or custom_scope, not both')
        if pack_key is not None and not pack_key.strip():
            raise InvalidScope('pack_key must not be empty')
        if pack_key is None and custom_scope is None:
            pack_key = MOST_RESTRICTIVE_PACK_KEY

        if pack_key is not None:
            pack = await self._catalog.resolve(owner_tenant_id, pack_key)
            if pack is None:
                raise NotFound(f'pack {pack_key!r} not found')
            base_scope = pack.scope
        else:
            base_scope = custom_scope

        date_from = parse_date(options.date_from)
        date_to = parse_date(options.date_to)
        check_date_range(date_from, date_to)
        now = self._clock()
        _check_expiry(options.expires_at, now)

        token = generate_share_token()
        share = await self._shares.create(ShareToken(
            id=new_share_id(),
            tenant_id=owner_tenant_id,
            subject_id=subject_id,
            token_hash=hash_token(token),
            token_prefix=token[:TOKEN_PREFIX_LENGTH],
            created_by=actor_id,
            pack_key=pack_key,
            custom_scope=custom_scope,
            date_from=date_from,
            date_to=date_to,
            recipient_email=options.recipient_email,
            expires_at=options.expires_at,
            created_at=now,
        ))
        return await self._issued(
            share, token,
            scope=base_scope.intersect(share.window).to_dict(),
            detail={'pack_key': pack_key},
        )

    async def create_lab_result_share(
        self,
        result_id: str,
        owner_tenant_id: str,
        actor_id: str,
        *,
        use_alias: bool = False,
        expires_at: datetime | None = None,
    ) -> IssuedShare:
        """Issue a link to one finalized lab result.

        Raises:
            Unauthorized: actor cannot manage sharing for the owner tenant.
            NotFound: the result is missing or belongs to another tenant.
            InvalidState: the result is not final.
            InvalidDateRange: naive or past ``expires_at``.
        """
        items = self._require_items()
        if not await self._permissions.can_manage_sharing(actor_id, owner_tenant_id):
            raise Unauthorized('sharing management capability required')
        result = await items.get_lab_result(result_id)
        if result is None or result.get('tenant_id') != owner_tenant_id:
            raise NotFound(f'lab result {result_id} not found')
        if result.get('status') != FINAL_RESULT_STATUS:
            raise InvalidState(
                'only final results can be shared',
                from_state=result.get('status'),
                operation='share',
            )
        return await self._issue_item_share(
            SubjectKind.LAB_RESULT, result_id, owner_tenant_id, actor_id,
            expires_at=expires_at, use_alias=use_alias,
        )

    async def create_media_share(
        self,
        asset_id: str,
        owner_tenant_id: str,
        actor_id: str,
        *,
        expires_at: datetime | None = None,
    ) -> IssuedShare:
        """Issue a link to one media asset. Opening it yields a signed URL."""
        items = self._require_items()
        if not await self._permissions.can_manage_sharing(actor_id, owner_tenant_id):
            raise Unauthorized('sharing management capability required')
        asset = await items.get_media_asset(asset_id)
        if asset is None or asset.get('tenant_id') != owner_tenant_id:
            raise NotFound(f'media asset {asset_id} not found')
        return await self._issue_item_share(
            SubjectKind.MEDIA, asset_id, owner_tenant_id, actor_id,
            expires_at=expires_at,
        )

    async def _issue_item_share(
        self,
        kind: SubjectKind,
        subject_id: str,
        owner_tenant_id: str,
        actor_id: str,
        *,
        expires_at: datetime | None,
        use_alias: bool = False,
    ) -> IssuedShare:
        now = self._clock()
        _check_expiry(expires_at, now)
        token = generate_share_token()
        share = await self._shares.create(ShareToken(
            id=new_share_id(),
            tenant_id=owner_tenant_id,
            subject_id=subject_id,
            token_hash=hash_token(token),
            token_prefix=token[:TOKEN_PREFIX_LENGTH],
            created_by=actor_id,
            subject_kind=kind.value,
            use_alias=use_alias,
            expires_at=expires_at,
            created_at=now,
        ))
        return await self._issued(
            share, token,
            scope={},
            detail={'subject_kind': kind.value, 'subject_id': subject_id},
        )

    async def _issued(
        self, share: ShareToken, token: str, *, scope: dict, detail: dict,
    ) -> IssuedShare:
        await self._audit.append(SharingAuditEntry(
            kind=AuditEventKind.CREATED,
            tenant_id=share.tenant_id,
            actor_id=share.created_by,
            share_id=share.id,
            scope=scope,
            detail={**detail, 'token': redact_token(token)},
            created_at=share.created_at,
        ))
        logger.info(
            'Share %s (%s) created for subject %s by %s (token=%s)',
            share.id, share.subject_kind, share.subject_id, share.created_by,
            redact_token(token),
        )
        return IssuedShare(
            share=share,
            token=token,
            url=share_url(self._public_base_url, token, share.kind),
        )

    def _require_items(self) -> ShareableItems:
        if self._items is None:
            raise RuntimeError('record shares require a shareable item store')
        return self._items

    async def revoke_share(
        self,
        share_id: str,
        actor_id: str,
        *,
        tenant_id: str | None = None,
        kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken:
        """Revoke a share. Effective for every later resolution.

        ``tenant_id`` scopes the lookup when the caller addresses the share
        through a tenant path; a share of another tenant reads as missing.
        """
        share = await self._shares.get(share_id, kind)
        if share is None or (tenant_id is not None and share.tenant_id != tenant_id):
            raise NotFound(f'share {share_id} not found')
        if not await self._permissions.can_manage_sharing(actor_id, share.tenant_id):
            raise Unauthorized('sharing management capability required')

        now = self._clock()
        state_before = share_state(share, now)
        revoked = await self._shares.mark_revoked(share_id, now, kind)
        if revoked is None:
            return share

        detail = {'state_before': state_before.value}
        if kind is not SubjectKind.HORSE:
            detail['subject_kind'] = kind.value
        await self._audit.append(SharingAuditEntry(
            kind=AuditEventKind.REVOKED,
            tenant_id=revoked.tenant_id,
            actor_id=actor_id,
            share_id=revoked.id,
            detail=detail,
            created_at=now,
        ))
        logger.info('Share %s revoked by %s', share_id, actor_id)
        return revoked

    async def list_shares(
        self,
        tenant_id: str,
        subject_id: str,
        actor_id: str,
        *,
        kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareListing:
        if not await self._permissions.is_member(actor_id, tenant_id):
            raise Unauthorized('not a member of this tenant')
        now = self._clock()
        listing = ShareListing()
        for share in await self._shares.list_for_subject(tenant_id, subject_id, kind):
            state = share_state(share, now)
            bucket = listing.active if state is ShareState.ACTIVE else listing.inactive
            bucket.append(ListedShare(share=share, state=state))
        return listing

    async def list_audit(
        self,
        tenant_id: str,
        actor_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        before: datetime | None = None,
    ) -> list[SharingAuditEntry]:
        """Newest-first audit page; pass the last ``created_at`` as ``before``."""
        if not await self._permissions.is_member(actor_id, tenant_id):
            raise Unauthorized('not a member of this tenant')
        return await self._audit.list_for_tenant(tenant_id, limit=limit, before=before)


def _check_expiry(expires_at: datetime | None, now: datetime) -> None:
    require_aware(expires_at)
    if expires_at is not None and expires_at <= now:
        raise InvalidDateRange('expires_at is already in the past')
