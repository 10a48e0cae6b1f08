"""Share-token domain model with token-hash persistence.

Security invariant:
  The plaintext share token is generated once and returned to the creator.
  Only the SHA-256 hash is stored. Resolution hashes the presented token
  and looks the hash up, so the lookup key is never the guessable secret
  itself and comparison time does not depend on how much of a guess
  matched.

Subjects:
  A share token is bound to exactly one subject of one kind: a horse
  (scoped by a pack or a custom scope plus a date window), a single
  finalized lab result, or a single media asset. The kind is fixed at
  creation; a token only resolves under its own kind.

Lifecycle:
  Stored status is ``active`` or ``revoked`` and only ever moves forward.
  ``expired`` is derived from ``expires_at`` on every check by
  ``share_state`` / ``is_share_effective``; nothing writes it.

This module provides:
  1. ``ShareToken``: domain object matching the share rows.
  2. ``ShareTokenRepository``: abstract storage protocol.
  3. ``InMemoryShareTokenRepository``: test implementation.
  4. ``generate_share_token`` / ``hash_token``: token lifecycle helpers.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Mapping, Protocol

from ..scope import ScopeDescriptor, check_date_range

# ── Constants ─────────────────────────────────────────────────────────

TOKEN_BYTES = 32  # 256-bit tokens.

# Only results in this status may be shared or resolved.
FINAL_RESULT_STATUS = 'final'


class ShareState(str, enum.Enum):
    ACTIVE = 'active'
    REVOKED = 'revoked'
    EXPIRED = 'expired'


class SubjectKind(str, enum.Enum):
    """What a share token is bound to."""

    HORSE = 'horse'
    LAB_RESULT = 'lab_result'
    MEDIA = 'media'


# Recipient-facing page for each kind.
SHARE_URL_PATHS: Mapping[SubjectKind, str] = MappingProxyType({
    SubjectKind.HORSE: '/share/horse/{token}',
    SubjectKind.LAB_RESULT: '/shared/lab-result/{token}',
    SubjectKind.MEDIA: '/shared/media/{token}',
})


# ── Token operations ──────────────────────────────────────────────────


def generate_share_token() -> str:
    """Generate a cryptographically random URL-safe share token.

    Independent of subject id and clock; returned to the creator once.
    """
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(plaintext: str) -> str:
    """SHA-256 hex digest of a plaintext share token."""
    return hashlib.sha256(plaintext.encode('utf-8')).hexdigest()


def share_url(base_url: str, token: str, kind: SubjectKind = SubjectKind.HORSE) -> str:
    """Public link a recipient opens to view the share."""
    return base_url.rstrip('/') + SHARE_URL_PATHS[kind].format(token=token)


# ── Domain model ──────────────────────────────────────────────────────


@dataclass
class ShareToken:
    """One share token row.

    Attributes:
        id: Identity.
        tenant_id: Owning tenant.
        subject_id: The shared horse, lab result or media asset.
        token_hash: SHA-256 hash of the plaintext token.
        token_prefix: First characters of the plaintext, for correlation.
        created_by: Actor who created the share.
        subject_kind: ``SubjectKind`` value; horse unless stated.
        pack_key: Pack referenced by key; re-resolved on every read.
        custom_scope: Categories for a custom share (mutually exclusive
            with ``pack_key``).
        date_from / date_to: Record date window applied on top of the scope.
        use_alias: Lab result shares only; show the horse's alias.
        recipient_email: Optional recipient binding.
        expires_at: After this instant the share is ineffective.
        status: Stored lifecycle, ``active`` or ``revoked``.
        revoked_at: When the owner revoked it.
        created_at: Creation timestamp.
    """

    id: str
    tenant_id: str
    subject_id: str
    token_hash: str
    created_by: str
    token_prefix: str = ''
    subject_kind: str = SubjectKind.HORSE.value
    pack_key: str | None = None
    custom_scope: ScopeDescriptor | None = None
    date_from: date | None = None
    date_to: date | None = None
    use_alias: bool = False
    recipient_email: str | None = None
    expires_at: datetime | None = None
    status: str = ShareState.ACTIVE.value
    revoked_at: datetime | None = None
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    def __post_init__(self) -> None:
        kind = SubjectKind(self.subject_kind)
        if kind is SubjectKind.HORSE:
            if (self.pack_key is None) == (self.custom_scope is None):
                raise ValueError('exactly one of pack_key / custom_scope must be set')
        elif (
            self.pack_key is not None or self.custom_scope is not None
            or self.date_from is not None or self.date_to is not None
        ):
            raise ValueError(f'{kind.value} shares carry no scope or date window')
        if self.use_alias and kind is not SubjectKind.LAB_RESULT:
            raise ValueError('use_alias applies to lab result shares only')
        check_date_range(self.date_from, self.date_to)

    @property
    def kind(self) -> SubjectKind:
        return SubjectKind(self.subject_kind)

    @property
    def is_revoked(self) -> bool:
        return self.status == ShareState.REVOKED.value or self.revoked_at is not None

    @property
    def window(self) -> ScopeDescriptor | None:
        """Date window as a descriptor with no category restriction, or None."""
        if self.date_from is None and self.date_to is None:
            return None
        return ScopeDescriptor(
            include_veterinary=True,
            include_laboratory=True,
            include_files=True,
            include_breeding=True,
            date_from=self.date_from,
            date_to=self.date_to,
        )

    def to_dict(self, now: datetime | None = None) -> dict:
        """Management view. Never includes the token or its hash."""
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'subject_kind': self.subject_kind,
            'subject_id': self.subject_id,
            'token_prefix': self.token_prefix,
            'pack_key': self.pack_key,
            'custom_scope': self.custom_scope.to_dict() if self.custom_scope else None,
            'date_from': _iso(self.date_from),
            'date_to': _iso(self.date_to),
            'use_alias': self.use_alias,
            'recipient_email': self.recipient_email,
            'expires_at': _iso(self.expires_at),
            'state': share_state(self, now).value,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'revoked_at': _iso(self.revoked_at),
        }


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def share_state(share: ShareToken, now: datetime | None = None) -> ShareState:
    """The one definition of a share's effective lifecycle state.

    Revocation wins over expiry. Expiry is computed from ``expires_at``
    against ``now`` on every call.
    """
    now = now or datetime.now(timezone.utc)
    if share.is_revoked:
        return ShareState.REVOKED
    if share.status == ShareState.EXPIRED.value:
        return ShareState.EXPIRED
    if share.expires_at is not None and now >= share.expires_at:
        return ShareState.EXPIRED
    return ShareState.ACTIVE


def is_share_effective(share: ShareToken, now: datetime | None = None) -> bool:
    return share_state(share, now) is ShareState.ACTIVE


def new_share_id() -> str:
    return f'shr_{uuid.uuid4().hex}'


# ── Repository protocol ──────────────────────────────────────────────


class ShareTokenRepository(Protocol):
    """Abstract share-token storage.

    Every lookup is scoped to one ``SubjectKind``; a row of another kind
    reads as missing.

    Implementations: InMemoryShareTokenRepository (testing),
    SupabaseShareTokenRepository (production).
    """

    async def create(self, share: ShareToken) -> ShareToken: ...

    async def get(
        self, share_id: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None: ...

    async def get_by_token_hash(
        self, token_hash: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None: ...

    async def list_for_subject(
        self, tenant_id: str, subject_id: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> list[ShareToken]: ...

    async def mark_revoked(
        self, share_id: str, revoked_at: datetime, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        """Move an ``active`` row to ``revoked``.

        Returns the updated share, or None when no row transitioned
        (unknown id or already revoked).
        """
        ...


# ── In-memory implementation ─────────────────────────────────────────


class InMemoryShareTokenRepository:
    """Simple in-memory share store for testing."""

    def __init__(self) -> None:
        self._shares: dict[str, ShareToken] = {}
        self._by_hash: dict[str, str] = {}

    def _of_kind(self, share_id: str | None, kind: SubjectKind) -> ShareToken | None:
        share = self._shares.get(share_id) if share_id is not None else None
        if share is None or share.subject_kind != kind.value:
            return None
        return share

    async def create(self, share: ShareToken) -> ShareToken:
        if share.token_hash in self._by_hash:
            raise ValueError('token hash collision')
        stored = replace(share)
        self._shares[stored.id] = stored
        self._by_hash[stored.token_hash] = stored.id
        return replace(stored)

    async def get(
        self, share_id: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        share = self._of_kind(share_id, kind)
        return replace(share) if share else None

    async def get_by_token_hash(
        self, token_hash: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        share = self._of_kind(self._by_hash.get(token_hash), kind)
        if share is None or not hmac.compare_digest(share.token_hash, token_hash):
            return None
        return replace(share)

    async def list_for_subject(
        self, tenant_id: str, subject_id: str, kind: SubjectKind = SubjectKind.HORSE,
    ) -> list[ShareToken]:
        result = [
            replace(s) for s in self._shares.values()
            if s.tenant_id == tenant_id
            and s.subject_id == subject_id
            and s.subject_kind == kind.value
        ]
        return sorted(result, key=lambda s: s.created_at, reverse=True)

    async def mark_revoked(
        self, share_id: str, revoked_at: datetime, kind: SubjectKind = SubjectKind.HORSE,
    ) -> ShareToken | None:
        share = self._of_kind(share_id, kind)
        if share is None or share.is_revoked:
            return None
        share.status = ShareState.REVOKED.value
        share.revoked_at = revoked_at
        return replace(share)
