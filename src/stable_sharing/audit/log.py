"""Append-only sharing audit log.

Every administrative event (create, revoke, accept, reject) and every
successful data read across share tokens and consent grants is recorded
here. Entries are immutable; the log has no update or delete operation.

Security invariants:
  - Exactly one of ``share_id`` / ``connection_id`` is set on each entry.
  - Plaintext share tokens never appear in entries; only an 8-character
    prefix is kept for correlation.
  - ``accessed`` entries carry the scope that was actually applied, not
    the scope that was requested or stored.
"""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

# ── Constants ─────────────────────────────────────────────────────────

TOKEN_PREFIX_LENGTH = 8  # Characters to keep for correlation.
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# A token is whatever follows a share-link path segment or a token= parameter.
_TOKEN_PATTERN = re.compile(
    r'(/(?:api/v1/public/shares|share|shared)/[a-z-]+/|[?&]token=)([A-Za-z0-9_-]+)'
)


class AuditEventKind(str, enum.Enum):
    CREATED = 'created'
    ACCESSED = 'accessed'
    REVOKED = 'revoked'
    EXPIRED_DETECTED = 'expired_detected'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'


# ── Token redaction ──────────────────────────────────────────────────


def redact_token(token: str | None) -> str:
    """Truncate a token to a prefix for logging.

    Returns ``<prefix>...`` or ``<redacted>`` for missing/short tokens.
    """
    if not token or len(token) < TOKEN_PREFIX_LENGTH:
        return '<redacted>'
    return f'{token[:TOKEN_PREFIX_LENGTH]}...'


def redact_string(text: str) -> str:
    """Shorten share-link tokens in free text (paths, URLs) to their prefix.

    Entity ids such as ``shr_...`` are left intact.
    """
    return _TOKEN_PATTERN.sub(lambda m: m.group(1) + redact_token(m.group(2)), text)


# ── Audit entry model ───────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class SharingAuditEntry:
    """One audit row.

    Attributes:
        kind: What happened.
        tenant_id: Tenant on whose behalf the event happened (share owner,
            connection initiator or grantor).
        actor_id: Who did it. ``None`` for anonymous link recipients.
        share_id: Set for share-token events.
        connection_id: Set for connection and grant events.
        grant_id: Consent grant involved, if any.
        counterparty_tenant_id: The other tenant of a connection, so both
            sides see the event in their log.
        resource_type: Grant resource type, if any.
        scope: Snapshot of the scope applied or granted.
        detail: Extra context. Never contains plaintext tokens.
    """

    kind: AuditEventKind
    tenant_id: str
    actor_id: str | None = None
    share_id: str | None = None
    connection_id: str | None = None
    grant_id: str | None = None
    counterparty_tenant_id: str | None = None
    resource_type: str | None = None
    scope: dict[str, Any] = field(default_factory=dict)
    detail: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    id: str = field(default_factory=lambda: f'aud_{uuid.uuid4().hex}')

    def __post_init__(self) -> None:
        if (self.share_id is None) == (self.connection_id is None):
            raise ValueError('exactly one of share_id / connection_id must be set')

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict safe for JSON logging and persistence."""
        return {
            'id': self.id,
            'event_type': self.kind.value,
            'tenant_id': self.tenant_id,
            'counterparty_tenant_id': self.counterparty_tenant_id,
            'actor_id': self.actor_id,
            'share_id': self.share_id,
            'connection_id': self.connection_id,
            'grant_id': self.grant_id,
            'resource_type': self.resource_type,
            'scope': self.scope,
            'detail': self.detail,
            'created_at': self.created_at.isoformat(),
        }


# ── Log protocol ─────────────────────────────────────────────────────


class SharingAuditLog(Protocol):
    """Append-only audit sink with tenant-scoped, newest-first listing."""

    async def append(self, entry: SharingAuditEntry) -> SharingAuditEntry: ...

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        before: datetime | None = None,
    ) -> list[SharingAuditEntry]: ...


# ── In-memory implementation ────────────────────────────────────────


class InMemorySharingAuditLog:
    """Test audit log that keeps entries in insertion order."""

    def __init__(self) -> None:
        self._entries: list[SharingAuditEntry] = []

    async def append(self, entry: SharingAuditEntry) -> SharingAuditEntry:
        self._entries.append(entry)
        return entry

    async def list_for_tenant(
        self,
        tenant_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        before: datetime | None = None,
    ) -> list[SharingAuditEntry]:
        matching = [
            e for e in self._entries
            if tenant_id in (e.tenant_id, e.counterparty_tenant_id)
            and (before is None or e.created_at < before)
        ]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        return matching[:clamp_page_size(limit)]

    @property
    def entries(self) -> list[SharingAuditEntry]:
        """All entries (for test assertions)."""
        return list(self._entries)

    def find(
        self,
        kind: AuditEventKind | None = None,
        *,
        share_id: str | None = None,
        connection_id: str | None = None,
    ) -> list[SharingAuditEntry]:
        """Filter entries by kind and/or entity."""
        result = self._entries
        if kind is not None:
            result = [e for e in result if e.kind == kind]
        if share_id is not None:
            result = [e for e in result if e.share_id == share_id]
        if connection_id is not None:
            result = [e for e in result if e.connection_id == connection_id]
        return list(result)


def clamp_page_size(limit: int) -> int:
    return max(1, min(int(limit), MAX_PAGE_SIZE))
