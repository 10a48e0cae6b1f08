"""Connection handshake and consent-grant service.

Invariants enforced:
  1. At most one active (pending or accepted) connection per ordered
     (initiator, recipient, type). An expired pending invitation does not
     count and is retired on sight.
  2. Transitions follow ``state_machine.ALLOWED_TRANSITIONS`` and are
     written compare-and-set, so a lost race surfaces as ``InvalidState``.
  3. Grants are created only under an accepted connection. Revoking the
     connection never writes to grant rows; grant effectiveness is derived.
  4. Preset seeding and notifications are dispatched after the transition
     is persisted and cannot fail it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

from ..audit import AuditEventKind, SharingAuditEntry, SharingAuditLog
from ..dispatch import BackgroundDispatcher
from ..errors import (
    ConnectionNotAccepted,
    DuplicateActive,
    InvalidScope,
    InvalidState,
    NotFound,
    Unauthorized,
)
from ..protocols import Notifier, SharingPermissions, TenantDirectory
from ..scope import ScopeDescriptor, check_date_range, parse_date, require_aware
from ..sharing.model import generate_share_token, hash_token
from .model import (
    ACCESS_LEVELS,
    CONNECTION_TYPES,
    RESOURCE_CAPABILITY,
    Connection,
    ConnectionRepository,
    ConsentGrant,
    GrantRepository,
    is_grant_effective,
    new_connection_id,
    new_grant_id,
)
from .presets import INITIATOR, RECIPIENT, NoPresetPolicy, PresetPolicy
from .state_machine import ConnectionOperation, ConnectionState, next_state

logger = logging.getLogger(__name__)

PRESET_ACTOR = 'system:preset'
EXPIRED_REASON = 'expired'


@dataclass(frozen=True, slots=True)
class IssuedConnection:
    """A new connection plus its handshake token (shown to the initiator once)."""

    connection: Connection
    token: str


class ConnectionService:
    def __init__(
        self,
        connections: ConnectionRepository,
        grants: GrantRepository,
        audit: SharingAuditLog,
        permissions: SharingPermissions,
        *,
        tenants: TenantDirectory | None = None,
        presets: PresetPolicy | None = None,
        notifier: Notifier | None = None,
        dispatcher: BackgroundDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connections = connections
        self._grants = grants
        self._audit = audit
        self._permissions = permissions
        self._tenants = tenants
        self._presets = presets or NoPresetPolicy()
        self._notifier = notifier
        self._dispatcher = dispatcher or BackgroundDispatcher()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Handshake ────────────────────────────────────────────────────

    async def create_connection(
        self,
        initiator_tenant_id: str,
        actor_id: str,
        connection_type: str,
        *,
        recipient_tenant_id: str | None = None,
        recipient_profile_id: str | None = None,
        recipient_email: str | None = None,
        expires_at: datetime | None = None,
    ) -> IssuedConnection:
        """Open a pending connection.

        Raises:
            Unauthorized: actor cannot manage sharing for the initiator.
            InvalidScope: unknown type or missing/self recipient, or an
                ``expires_at`` already in the past.
            InvalidDateRange: ``expires_at`` without a timezone.
            DuplicateActive: an active connection already exists.
        """
        if not await self._permissions.can_manage_sharing(actor_id, initiator_tenant_id):
            raise Unauthorized('sharing management capability required')
        if connection_type not in CONNECTION_TYPES:
            raise InvalidScope(f'unknown connection type {connection_type!r}')
        email = recipient_email.strip().lower() if recipient_email else None
        if not (recipient_tenant_id or recipient_profile_id or email):
            raise InvalidScope('a recipient tenant, profile or email is required')
        if recipient_tenant_id == initiator_tenant_id:
            raise InvalidScope('a tenant cannot connect to itself')

        now = self._clock()
        require_aware(expires_at)
        if expires_at is not None and expires_at <= now:
            raise InvalidScope('expires_at must be in the future')

        token = generate_share_token()
        connection = Connection(
            id=new_connection_id(),
            initiator_tenant_id=initiator_tenant_id,
            initiator_user_id=actor_id,
            connection_type=connection_type,
            token_hash=hash_token(token),
            recipient_tenant_id=recipient_tenant_id,
            recipient_profile_id=recipient_profile_id,
            recipient_email=email,
            expires_at=expires_at,
            created_at=now,
        )

        for existing in await self._connections.find_open(
            initiator_tenant_id, connection.recipient_key, connection_type,
        ):
            if existing.invitation_expired(now):
                await self._retire_expired(existing, now)
                continue
            raise DuplicateActive(existing.id)

        created = await self._connections.create(connection)
        await self._audit.append(self._connection_entry(
            AuditEventKind.CREATED, created, actor_id,
            detail={'connection_type': connection_type},
        ))
        logger.info(
            'Connection %s created by %s (type=%s)',
            created.id, actor_id, connection_type,
        )
        return IssuedConnection(connection=created, token=token)

    async def accept_connection(self, token: str, actor_id: str) -> Connection:
        connection = await self._by_token(token)
        if await self._side_of(connection, actor_id) != RECIPIENT:
            raise Unauthorized('only the recipient can accept this connection')
        now = self._clock()
        await self._check_not_expired(connection, now, ConnectionOperation.ACCEPT)
        target = next_state(connection.state, ConnectionOperation.ACCEPT)

        fields: dict[str, Any] = {'responded_at': now}
        if connection.recipient_tenant_id is None and connection.recipient_profile_id is None:
            # Email invitation: bind the accepting user as the recipient.
            fields['recipient_profile_id'] = actor_id
        accepted = await self._transition(connection, target, ConnectionOperation.ACCEPT, **fields)

        await self._audit.append(self._connection_entry(
            AuditEventKind.ACCEPTED, accepted, actor_id,
        ))
        self._dispatcher.submit('seed_presets', self._seed_presets, accepted)
        self._notify('connection.accepted', self._connection_payload(accepted))
        return accepted

    async def reject_connection(
        self, token: str, actor_id: str, reason: str | None = None,
    ) -> Connection:
        connection = await self._by_token(token)
        if await self._side_of(connection, actor_id) != RECIPIENT:
            raise Unauthorized('only the recipient can reject this connection')
        now = self._clock()
        await self._check_not_expired(connection, now, ConnectionOperation.REJECT)
        target = next_state(connection.state, ConnectionOperation.REJECT)
        rejected = await self._transition(
            connection, target, ConnectionOperation.REJECT,
            responded_at=now, reject_reason=reason or None,
        )
        await self._audit.append(self._connection_entry(
            AuditEventKind.REJECTED, rejected, actor_id,
            detail={'reason': reason} if reason else None,
        ))
        self._notify('connection.rejected', self._connection_payload(rejected))
        return rejected

    async def revoke_connection(self, connection_id: str, actor_id: str) -> Connection:
        """Either party ends an accepted connection.

        Child grants are left untouched; they stop being effective because
        ``is_grant_effective`` reads the connection state.
        """
        connection = await self.get_connection(connection_id)
        if await self._side_of(connection, actor_id) is None:
            raise Unauthorized('not a party to this connection')
        target = next_state(connection.state, ConnectionOperation.REVOKE)
        revoked = await self._transition(
            connection, target, ConnectionOperation.REVOKE,
            revoked_at=self._clock(), revoked_by=actor_id,
        )
        await self._audit.append(self._connection_entry(
            AuditEventKind.REVOKED, revoked, actor_id,
        ))
        self._notify('connection.revoked', self._connection_payload(revoked))
        return revoked

    async def expire_stale_connections(self, now: datetime | None = None) -> int:
        """Retire pending invitations past ``expires_at``. Returns the count."""
        now = now or self._clock()
        count = 0
        for connection in await self._connections.list_pending_expired(now):
            if await self._retire_expired(connection, now):
                count += 1
        if count:
            logger.info('Retired %d expired connection invitations', count)
        return count

    # ── Queries ──────────────────────────────────────────────────────

    async def get_connection(self, connection_id: str) -> Connection:
        connection = await self._connections.get(connection_id)
        if connection is None:
            raise NotFound(f'connection {connection_id} not found')
        return connection

    async def list_connections(self, tenant_id: str, actor_id: str) -> list[Connection]:
        if not await self._permissions.is_member(actor_id, tenant_id):
            raise Unauthorized('not a member of this tenant')
        return await self._connections.list_for_tenant(tenant_id)

    async def list_grants(
        self, connection_id: str, actor_id: str,
    ) -> list[tuple[ConsentGrant, bool]]:
        """Grants under a connection, each with its effectiveness right now."""
        connection = await self.get_connection(connection_id)
        if await self._side_of(connection, actor_id) is None:
            raise Unauthorized('not a party to this connection')
        now = self._clock()
        return [
            (grant, is_grant_effective(grant, connection, now))
            for grant in await self._grants.list_for_connection(connection_id)
        ]

    async def is_grant_effective(self, grant_id: str) -> bool:
        """Recompute effectiveness from fresh reads of grant and connection."""
        grant = await self._grants.get(grant_id)
        if grant is None:
            return False
        connection = await self._connections.get(grant.connection_id)
        return is_grant_effective(grant, connection, self._clock())

    # ── Grants ───────────────────────────────────────────────────────

    async def create_grant(
        self,
        connection_id: str,
        actor_id: str,
        *,
        resource_type: str,
        access_level: str = 'read',
        date_from: date | str | None = None,
        date_to: date | str | None = None,
        forward_only: bool = False,
        resource_ids: Iterable[str] | None = None,
        expires_at: datetime | None = None,
        grantor_tenant_id: str | None = None,
    ) -> ConsentGrant:
        """Issue a grant from the actor's side of an accepted connection.

        Raises:
            NotFound: unknown connection.
            ConnectionNotAccepted: connection is not currently accepted.
            Unauthorized: actor cannot manage sharing for the grantor.
            InvalidScope / InvalidDateRange: malformed grant input.
        """
        connection = await self.get_connection(connection_id)
        if connection.state is not ConnectionState.ACCEPTED:
            raise ConnectionNotAccepted(
                from_state=connection.state.value, operation='create_grant',
            )
        if grantor_tenant_id is None:
            if await self._permissions.can_manage_sharing(
                actor_id, connection.initiator_tenant_id,
            ):
                grantor_tenant_id = connection.initiator_tenant_id
            else:
                grantor_tenant_id = connection.recipient_tenant_id
        if grantor_tenant_id is None or grantor_tenant_id not in connection.party_tenants():
            raise Unauthorized('grantor must be a tenant party to the connection')
        if not await self._permissions.can_manage_sharing(actor_id, grantor_tenant_id):
            raise Unauthorized('sharing management capability required')

        return await self._issue_grant(
            connection,
            grantor_tenant_id=grantor_tenant_id,
            actor_id=actor_id,
            resource_type=resource_type,
            access_level=access_level,
            date_from=parse_date(date_from),
            date_to=parse_date(date_to),
            forward_only=forward_only,
            resource_ids=tuple(resource_ids) if resource_ids is not None else None,
            expires_at=expires_at,
        )

    async def revoke_grant(self, grant_id: str, actor_id: str) -> ConsentGrant:
        """Grantor-only, idempotent. Only the first revoke is audited."""
        grant = await self._grants.get(grant_id)
        if grant is None:
            raise NotFound(f'grant {grant_id} not found')
        if not await self._permissions.can_manage_sharing(actor_id, grant.grantor_tenant_id):
            raise Unauthorized('only the grantor can revoke this grant')

        revoked = await self._grants.mark_revoked(grant_id, self._clock())
        if revoked is None:
            return grant
        await self._audit.append(self._grant_entry(
            AuditEventKind.REVOKED, revoked, actor_id,
        ))
        self._notify('grant.revoked', self._grant_payload(revoked))
        return revoked

    async def _issue_grant(
        self,
        connection: Connection,
        *,
        grantor_tenant_id: str,
        actor_id: str,
        resource_type: str,
        access_level: str = 'read',
        date_from: date | None = None,
        date_to: date | None = None,
        forward_only: bool = False,
        resource_ids: tuple[str, ...] | None = None,
        expires_at: datetime | None = None,
    ) -> ConsentGrant:
        if resource_type not in RESOURCE_CAPABILITY:
            raise InvalidScope(f'unknown resource type {resource_type!r}')
        if access_level not in ACCESS_LEVELS:
            raise InvalidScope(f'unknown access level {access_level!r}')
        check_date_range(date_from, date_to)
        require_aware(expires_at)

        if grantor_tenant_id == connection.initiator_tenant_id:
            grantee_tenant_id = connection.recipient_tenant_id
            grantee_profile_id = connection.recipient_profile_id
        else:
            grantee_tenant_id = connection.initiator_tenant_id
            grantee_profile_id = None

        grant = await self._grants.create(ConsentGrant(
            id=new_grant_id(),
            connection_id=connection.id,
            grantor_tenant_id=grantor_tenant_id,
            grantee_tenant_id=grantee_tenant_id,
            grantee_profile_id=grantee_profile_id,
            resource_type=resource_type,
            access_level=access_level,
            date_from=date_from,
            date_to=date_to,
            forward_only=forward_only,
            resource_ids=resource_ids,
            expires_at=expires_at,
            created_by=actor_id,
            created_at=self._clock(),
        ))
        await self._audit.append(self._grant_entry(AuditEventKind.CREATED, grant, actor_id))
        self._notify('grant.created', self._grant_payload(grant))
        return grant

    # ── Best-effort steps ────────────────────────────────────────────

    async def _seed_presets(self, connection: Connection) -> None:
        if self._tenants is None:
            return
        initiator_type = await self._tenants.get_tenant_type(connection.initiator_tenant_id)
        recipient_type = None
        if connection.recipient_tenant_id:
            recipient_type = await self._tenants.get_tenant_type(connection.recipient_tenant_id)

        presets = self._presets.presets_for(initiator_type, recipient_type)
        for preset in presets:
            grantor = (
                connection.initiator_tenant_id if preset.grantor == INITIATOR
                else connection.recipient_tenant_id
            )
            if grantor is None:
                continue
            await self._issue_grant(
                connection,
                grantor_tenant_id=grantor,
                actor_id=PRESET_ACTOR,
                resource_type=preset.resource_type,
                access_level=preset.access_level,
                forward_only=preset.forward_only,
            )
        if presets:
            logger.info(
                'Seeded %d preset grants on connection %s (%s -> %s)',
                len(presets), connection.id, initiator_type, recipient_type,
            )

    def _notify(self, event: str, payload: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        self._dispatcher.submit(f'notify:{event}', self._notifier.notify, event, payload)

    # ── Helpers ──────────────────────────────────────────────────────

    async def _by_token(self, token: str) -> Connection:
        connection = await self._connections.get_by_token_hash(hash_token(token or ''))
        if connection is None:
            raise NotFound('connection not found')
        return connection

    async def _side_of(self, connection: Connection, actor_id: str) -> str | None:
        """Which party ``actor_id`` represents, or None."""
        if connection.initiator_user_id == actor_id or await self._permissions.can_manage_sharing(
            actor_id, connection.initiator_tenant_id,
        ):
            return INITIATOR
        if connection.recipient_tenant_id:
            if await self._permissions.can_manage_sharing(actor_id, connection.recipient_tenant_id):
                return RECIPIENT
            return None
        if connection.recipient_profile_id:
            return RECIPIENT if connection.recipient_profile_id == actor_id else None
        # Email invitation: holding the token is what identifies the recipient.
        return RECIPIENT

    async def _check_not_expired(
        self, connection: Connection, now: datetime, operation: ConnectionOperation,
    ) -> None:
        if connection.invitation_expired(now):
            await self._retire_expired(connection, now)
            raise InvalidState(
                'invitation has expired',
                from_state=connection.state.value,
                operation=operation.value,
            )

    async def _retire_expired(self, connection: Connection, now: datetime) -> bool:
        retired = await self._connections.transition(
            connection.id,
            ConnectionState.PENDING,
            ConnectionState.REJECTED,
            responded_at=now,
            reject_reason=EXPIRED_REASON,
        )
        if retired is None:
            return False
        await self._audit.append(self._connection_entry(
            AuditEventKind.EXPIRED_DETECTED, retired, None,
            detail={'expires_at': connection.expires_at.isoformat()},
        ))
        return True

    async def _transition(
        self,
        connection: Connection,
        target: ConnectionState,
        operation: ConnectionOperation,
        **fields: Any,
    ) -> Connection:
        updated = await self._connections.transition(
            connection.id, connection.state, target, **fields,
        )
        if updated is None:
            current = await self._connections.get(connection.id)
            state = current.state.value if current else connection.state.value
            raise InvalidState(from_state=state, operation=operation.value)
        return updated

    def _connection_entry(
        self,
        kind: AuditEventKind,
        connection: Connection,
        actor_id: str | None,
        *,
        detail: dict[str, Any] | None = None,
    ) -> SharingAuditEntry:
        return SharingAuditEntry(
            kind=kind,
            tenant_id=connection.initiator_tenant_id,
            counterparty_tenant_id=connection.recipient_tenant_id,
            actor_id=actor_id,
            connection_id=connection.id,
            detail=detail or {},
            created_at=self._clock(),
        )

    def _grant_entry(
        self, kind: AuditEventKind, grant: ConsentGrant, actor_id: str | None,
    ) -> SharingAuditEntry:
        scope = ScopeDescriptor.of(
            [grant.capability], date_from=grant.date_from, date_to=grant.date_to,
        )
        return SharingAuditEntry(
            kind=kind,
            tenant_id=grant.grantor_tenant_id,
            counterparty_tenant_id=grant.grantee_tenant_id,
            actor_id=actor_id,
            connection_id=grant.connection_id,
            grant_id=grant.id,
            resource_type=grant.resource_type,
            scope=scope.to_dict(),
            detail={'access_level': grant.access_level, 'forward_only': grant.forward_only},
            created_at=self._clock(),
        )

    @staticmethod
    def _connection_payload(connection: Connection) -> dict[str, Any]:
        return {
            'connection_id': connection.id,
            'state': connection.state.value,
            'initiator_tenant_id': connection.initiator_tenant_id,
            'recipient_tenant_id': connection.recipient_tenant_id,
            'recipient_profile_id': connection.recipient_profile_id,
            'reject_reason': connection.reject_reason,
        }

    @staticmethod
    def _grant_payload(grant: ConsentGrant) -> dict[str, Any]:
        return {
            'grant_id': grant.id,
            'connection_id': grant.connection_id,
            'grantor_tenant_id': grant.grantor_tenant_id,
            'grantee_tenant_id': grant.grantee_tenant_id,
            'resource_type': grant.resource_type,
            'state': grant.state.value,
        }
