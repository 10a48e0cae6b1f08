"""Connection and consent-grant domain model.

A connection is a bilateral relationship between an initiating tenant and
a recipient (tenant, individual profile, or email invitee). Consent grants
hang off an accepted connection and give the other party read access to
one resource type of the grantor.

Grant effectiveness is derived, never stored: ``is_grant_effective``
checks the grant row, the parent connection's *current* state and the date
bounds each time it is called. Revoking a connection therefore disables
every grant under it without touching the grant rows.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from types import MappingProxyType
from typing import Mapping, Protocol

from ..scope import Capability, check_date_range
from .state_machine import ACTIVE_STATES, ConnectionState

# ── Constants ─────────────────────────────────────────────────────────

CONNECTION_TYPES = frozenset({'b2b', 'b2c', 'employment'})
ACCESS_LEVELS = frozenset({'read', 'write'})

# Grant resource type -> record category it exposes.
RESOURCE_CAPABILITY: Mapping[str, Capability] = MappingProxyType({
    'vet_records': Capability.VETERINARY,
    'lab_results': Capability.LABORATORY,
    'breeding_records': Capability.BREEDING,
    'files': Capability.FILES,
})


class GrantState(str, enum.Enum):
    ACTIVE = 'active'
    REVOKED = 'revoked'


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


# ── Connection ────────────────────────────────────────────────────────


@dataclass
class Connection:
    """Connection row. Only the handshake token's hash is stored."""

    id: str
    initiator_tenant_id: str
    connection_type: str
    token_hash: str
    initiator_user_id: str | None = None
    recipient_tenant_id: str | None = None
    recipient_profile_id: str | None = None
    recipient_email: str | None = None
    state: ConnectionState = ConnectionState.PENDING
    reject_reason: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = field(default_factory=_now)
    responded_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None

    @property
    def recipient_key(self) -> str:
        """Stable identifier of the recipient, for duplicate detection."""
        if self.recipient_tenant_id:
            return f'tenant:{self.recipient_tenant_id}'
        if self.recipient_profile_id:
            return f'profile:{self.recipient_profile_id}'
        return f'email:{(self.recipient_email or "").lower()}'

    def invitation_expired(self, now: datetime) -> bool:
        """A pending invitation past ``expires_at`` can no longer be answered."""
        return (
            self.state is ConnectionState.PENDING
            and self.expires_at is not None
            and now >= self.expires_at
        )

    def is_active(self, now: datetime) -> bool:
        return self.state in ACTIVE_STATES and not self.invitation_expired(now)

    def party_tenants(self) -> tuple[str, ...]:
        if self.recipient_tenant_id:
            return (self.initiator_tenant_id, self.recipient_tenant_id)
        return (self.initiator_tenant_id,)

    def to_dict(self, now: datetime | None = None) -> dict:
        """Management view. The handshake token hash is never included."""
        return {
            'id': self.id,
            'initiator_tenant_id': self.initiator_tenant_id,
            'initiator_user_id': self.initiator_user_id,
            'connection_type': self.connection_type,
            'recipient_tenant_id': self.recipient_tenant_id,
            'recipient_profile_id': self.recipient_profile_id,
            'recipient_email': self.recipient_email,
            'state': self.state.value,
            'invitation_expired': self.invitation_expired(now or _now()),
            'reject_reason': self.reject_reason,
            'expires_at': _iso(self.expires_at),
            'created_at': _iso(self.created_at),
            'responded_at': _iso(self.responded_at),
            'revoked_at': _iso(self.revoked_at),
            'revoked_by': self.revoked_by,
        }


def new_connection_id() -> str:
    return f'con_{uuid.uuid4().hex}'


# ── Consent grant ─────────────────────────────────────────────────────


@dataclass
class ConsentGrant:
    """Directional grant: ``grantor_tenant_id`` shares with the grantee."""

    id: str
    connection_id: str
    grantor_tenant_id: str
    resource_type: str
    access_level: str = 'read'
    grantee_tenant_id: str | None = None
    grantee_profile_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    forward_only: bool = False
    resource_ids: tuple[str, ...] | None = None
    expires_at: datetime | None = None
    state: GrantState = GrantState.ACTIVE
    created_by: str | None = None
    created_at: datetime = field(default_factory=_now)
    revoked_at: datetime | None = None

    def __post_init__(self) -> None:
        check_date_range(self.date_from, self.date_to)

    @property
    def capability(self) -> Capability:
        return RESOURCE_CAPABILITY[self.resource_type]

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'connection_id': self.connection_id,
            'grantor_tenant_id': self.grantor_tenant_id,
            'grantee_tenant_id': self.grantee_tenant_id,
            'grantee_profile_id': self.grantee_profile_id,
            'resource_type': self.resource_type,
            'access_level': self.access_level,
            'date_from': _iso(self.date_from),
            'date_to': _iso(self.date_to),
            'forward_only': self.forward_only,
            'resource_ids': list(self.resource_ids) if self.resource_ids is not None else None,
            'expires_at': _iso(self.expires_at),
            'state': self.state.value,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'revoked_at': _iso(self.revoked_at),
        }


def is_grant_effective(
    grant: ConsentGrant,
    connection: Connection | None,
    now: datetime | None = None,
) -> bool:
    """Whether a consumer may honor ``grant`` right now.

    ``connection`` must be the parent connection as read just now; a stale
    copy defeats the cascade.
    """
    now = now or _now()
    if grant.state is not GrantState.ACTIVE:
        return False
    if connection is None or connection.id != grant.connection_id:
        return False
    if connection.state is not ConnectionState.ACCEPTED:
        return False
    today = now.date()
    if grant.date_from is not None and today < grant.date_from:
        return False
    if grant.date_to is not None and today > grant.date_to:
        return False
    if grant.expires_at is not None and now >= grant.expires_at:
        return False
    return True


def new_grant_id() -> str:
    return f'grt_{uuid.uuid4().hex}'


# ── Repository protocols ─────────────────────────────────────────────


class ConnectionRepository(Protocol):
    async def create(self, connection: Connection) -> Connection: ...
    async def get(self, connection_id: str) -> Connection | None: ...
    async def get_by_token_hash(self, token_hash: str) -> Connection | None: ...

    async def find_open(
        self, initiator_tenant_id: str, recipient_key: str, connection_type: str,
    ) -> list[Connection]:
        """Pending or accepted connections for the ordered pair and type."""
        ...

    async def list_for_tenant(self, tenant_id: str) -> list[Connection]: ...

    async def list_pending_expired(self, now: datetime) -> list[Connection]: ...

    async def transition(
        self,
        connection_id: str,
        from_state: ConnectionState,
        to_state: ConnectionState,
        **fields,
    ) -> Connection | None:
        """Compare-and-set the state. None when the row was not in ``from_state``."""
        ...


class GrantRepository(Protocol):
    async def create(self, grant: ConsentGrant) -> ConsentGrant: ...
    async def get(self, grant_id: str) -> ConsentGrant | None: ...
    async def list_for_connection(self, connection_id: str) -> list[ConsentGrant]: ...

    async def mark_revoked(
        self, grant_id: str, revoked_at: datetime,
    ) -> ConsentGrant | None:
        """Move an active grant to revoked. None when nothing transitioned."""
        ...


# ── In-memory implementations ────────────────────────────────────────


class InMemoryConnectionRepository:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    async def create(self, connection: Connection) -> Connection:
        self._connections[connection.id] = replace(connection)
        return replace(connection)

    async def get(self, connection_id: str) -> Connection | None:
        conn = self._connections.get(connection_id)
        return replace(conn) if conn else None

    async def get_by_token_hash(self, token_hash: str) -> Connection | None:
        for conn in self._connections.values():
            if conn.token_hash == token_hash:
                return replace(conn)
        return None

    async def find_open(
        self, initiator_tenant_id: str, recipient_key: str, connection_type: str,
    ) -> list[Connection]:
        return [
            replace(c) for c in self._connections.values()
            if c.initiator_tenant_id == initiator_tenant_id
            and c.recipient_key == recipient_key
            and c.connection_type == connection_type
            and c.state in ACTIVE_STATES
        ]

    async def list_for_tenant(self, tenant_id: str) -> list[Connection]:
        result = [
            replace(c) for c in self._connections.values()
            if tenant_id in c.party_tenants()
        ]
        return sorted(result, key=lambda c: c.created_at, reverse=True)

    async def list_pending_expired(self, now: datetime) -> list[Connection]:
        return [
            replace(c) for c in self._connections.values()
            if c.invitation_expired(now)
        ]

    async def transition(
        self,
        connection_id: str,
        from_state: ConnectionState,
        to_state: ConnectionState,
        **fields,
    ) -> Connection | None:
        conn = self._connections.get(connection_id)
        if conn is None or conn.state is not from_state:
            return None
        updated = replace(conn, state=to_state, **fields)
        self._connections[connection_id] = updated
        return replace(updated)


class InMemoryGrantRepository:
    def __init__(self) -> None:
        self._grants: dict[str, ConsentGrant] = {}

    async def create(self, grant: ConsentGrant) -> ConsentGrant:
        self._grants[grant.id] = replace(grant)
        return replace(grant)

    async def get(self, grant_id: str) -> ConsentGrant | None:
        grant = self._grants.get(grant_id)
        return replace(grant) if grant else None

    async def list_for_connection(self, connection_id: str) -> list[ConsentGrant]:
        return sorted(
            (replace(g) for g in self._grants.values() if g.connection_id == connection_id),
            key=lambda g: g.created_at,
        )

    async def mark_revoked(
        self, grant_id: str, revoked_at: datetime,
    ) -> ConsentGrant | None:
        grant = self._grants.get(grant_id)
        if grant is None or grant.state is GrantState.REVOKED:
            return None
        grant.state = GrantState.REVOKED
        grant.revoked_at = revoked_at
        return replace(grant)
