"""Connection handshake, consent grants and the effectiveness cascade."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from stable_sharing.audit import AuditEventKind
from stable_sharing.connections.model import GrantState
from stable_sharing.connections.service import EXPIRED_REASON, PRESET_ACTOR
from stable_sharing.connections.state_machine import ConnectionState
from stable_sharing.errors import (
    ConnectionNotAccepted,
    DuplicateActive,
    InvalidDateRange,
    InvalidScope,
    InvalidState,
    NotFound,
    Unauthorized,
)


async def _open(service, **kwargs):
    kwargs.setdefault('recipient_tenant_id', 'lab_b')
    return await service.create_connection('stable_a', 'alice', 'b2b', **kwargs)


async def _accepted(service):
    issued = await _open(service)
    await service.accept_connection(issued.token, 'carol')
    return issued


class TestCreateConnection:
    @pytest.mark.asyncio
    async def test_creates_pending_with_token(self, connection_service, connections, audit):
        issued = await _open(connection_service)
        assert issued.connection.state is ConnectionState.PENDING
        stored = await connections.get(issued.connection.id)
        assert stored.token_hash != issued.token
        assert 'token_hash' not in stored.to_dict()
        [entry] = audit.find(AuditEventKind.CREATED, connection_id=issued.connection.id)
        assert entry.counterparty_tenant_id == 'lab_b'

    @pytest.mark.asyncio
    async def test_duplicate_active(self, connection_service):
        first = await _open(connection_service)
        with pytest.raises(DuplicateActive) as info:
            await _open(connection_service)
        assert info.value.existing_id == first.connection.id

    @pytest.mark.asyncio
    async def test_other_type_is_not_duplicate(self, connection_service):
        await _open(connection_service)
        issued = await connection_service.create_connection(
            'stable_a', 'alice', 'employment', recipient_tenant_id='lab_b',
        )
        assert issued.connection.connection_type == 'employment'

    @pytest.mark.asyncio
    async def test_after_rejection_a_new_one_may_open(self, connection_service):
        first = await _open(connection_service)
        await connection_service.reject_connection(first.token, 'carol')
        second = await _open(connection_service)
        assert second.connection.id != first.connection.id

    @pytest.mark.asyncio
    async def test_expired_invitation_is_retired_not_duplicate(
        self, connection_service, connections, clock, audit,
    ):
        first = await _open(connection_service, expires_at=clock.now + timedelta(days=1))
        clock.advance(days=2)
        second = await _open(connection_service)
        old = await connections.get(first.connection.id)
        assert old.state is ConnectionState.REJECTED
        assert old.reject_reason == EXPIRED_REASON
        assert second.connection.state is ConnectionState.PENDING
        assert len(audit.find(AuditEventKind.EXPIRED_DETECTED)) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize('kwargs', [
        {'recipient_tenant_id': None},
        {'recipient_tenant_id': 'stable_a'},
    ])
    async def test_bad_recipient(self, connection_service, kwargs):
        with pytest.raises(InvalidScope):
            await _open(connection_service, **kwargs)

    @pytest.mark.asyncio
    async def test_unknown_type(self, connection_service):
        with pytest.raises(InvalidScope):
            await connection_service.create_connection(
                'stable_a', 'alice', 'friends', recipient_tenant_id='lab_b',
            )

    @pytest.mark.asyncio
    async def test_requires_manager(self, connection_service):
        with pytest.raises(Unauthorized):
            await connection_service.create_connection(
                'stable_a', 'bob', 'b2b', recipient_tenant_id='lab_b',
            )

    @pytest.mark.asyncio
    async def test_naive_expiry_rejected(self, connection_service, clock):
        with pytest.raises(InvalidDateRange):
            await _open(connection_service, expires_at=clock.now.replace(tzinfo=None) + timedelta(days=1))


class TestHandshake:
    @pytest.mark.asyncio
    async def test_accept(self, connection_service, audit):
        issued = await _open(connection_service)
        accepted = await connection_service.accept_connection(issued.token, 'carol')
        assert accepted.state is ConnectionState.ACCEPTED
        assert accepted.responded_at is not None
        assert len(audit.find(AuditEventKind.ACCEPTED, connection_id=issued.connection.id)) == 1

    @pytest.mark.asyncio
    async def test_only_recipient_accepts(self, connection_service):
        issued = await _open(connection_service)
        with pytest.raises(Unauthorized):
            await connection_service.accept_connection(issued.token, 'alice')

    @pytest.mark.asyncio
    async def test_unknown_token(self, connection_service):
        with pytest.raises(NotFound):
            await connection_service.accept_connection('bogus', 'carol')

    @pytest.mark.asyncio
    async def test_reject_then_accept_fails_and_no_grant_possible(self, connection_service, grants):
        issued = await _open(connection_service)
        rejected = await connection_service.reject_connection(issued.token, 'carol', 'not now')
        assert rejected.state is ConnectionState.REJECTED
        assert rejected.reject_reason == 'not now'

        with pytest.raises(InvalidState):
            await connection_service.accept_connection(issued.token, 'carol')
        for actor in ('alice', 'carol'):
            with pytest.raises(ConnectionNotAccepted):
                await connection_service.create_grant(
                    issued.connection.id, actor, resource_type='vet_records',
                )
        assert await grants.list_for_connection(issued.connection.id) == []

    @pytest.mark.asyncio
    async def test_grant_under_pending_fails(self, connection_service):
        issued = await _open(connection_service)
        with pytest.raises(ConnectionNotAccepted) as info:
            await connection_service.create_grant(
                issued.connection.id, 'alice', resource_type='vet_records',
            )
        assert isinstance(info.value, InvalidState)

    @pytest.mark.asyncio
    async def test_accept_expired_invitation(self, connection_service, connections, clock, audit):
        issued = await _open(connection_service, expires_at=clock.now + timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(InvalidState):
            await connection_service.accept_connection(issued.token, 'carol')
        stored = await connections.get(issued.connection.id)
        assert stored.state is ConnectionState.REJECTED
        with pytest.raises(InvalidState):
            await connection_service.reject_connection(issued.token, 'carol')
        assert len(audit.find(AuditEventKind.EXPIRED_DETECTED)) == 1

    @pytest.mark.asyncio
    async def test_outsider_is_unauthorized_whatever_the_state(self, connection_service):
        issued = await _open(connection_service)
        await connection_service.reject_connection(issued.token, 'carol')
        with pytest.raises(Unauthorized):
            await connection_service.accept_connection(issued.token, 'mallory')
        with pytest.raises(Unauthorized):
            await connection_service.reject_connection(issued.token, 'mallory')

    @pytest.mark.asyncio
    async def test_outsider_cannot_retire_expired_invitation(
        self, connection_service, connections, clock, audit,
    ):
        issued = await _open(connection_service, expires_at=clock.now + timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(Unauthorized):
            await connection_service.accept_connection(issued.token, 'mallory')
        stored = await connections.get(issued.connection.id)
        assert stored.state is ConnectionState.PENDING
        assert audit.find(AuditEventKind.EXPIRED_DETECTED) == []

    @pytest.mark.asyncio
    async def test_expire_stale_sweep(self, connection_service, clock):
        await _open(connection_service, expires_at=clock.now + timedelta(hours=1))
        await connection_service.create_connection(
            'stable_a', 'alice', 'b2c', recipient_email='owner@example.com',
        )
        clock.advance(hours=2)
        assert await connection_service.expire_stale_connections() == 1
        assert await connection_service.expire_stale_connections() == 0

    @pytest.mark.asyncio
    async def test_email_invite_binds_accepting_user(self, connection_service):
        issued = await connection_service.create_connection(
            'stable_a', 'alice', 'b2c', recipient_email='Owner@Example.com',
        )
        assert issued.connection.recipient_email == 'owner@example.com'
        accepted = await connection_service.accept_connection(issued.token, 'dave')
        assert accepted.recipient_profile_id == 'dave'

    @pytest.mark.asyncio
    async def test_revoke_by_either_party(self, connection_service):
        issued = await _accepted(connection_service)
        revoked = await connection_service.revoke_connection(issued.connection.id, 'carol')
        assert revoked.state is ConnectionState.REVOKED
        assert revoked.revoked_by == 'carol'
        with pytest.raises(InvalidState):
            await connection_service.revoke_connection(issued.connection.id, 'alice')

    @pytest.mark.asyncio
    async def test_revoke_pending_is_invalid(self, connection_service):
        issued = await _open(connection_service)
        with pytest.raises(InvalidState):
            await connection_service.revoke_connection(issued.connection.id, 'alice')

    @pytest.mark.asyncio
    async def test_outsider_cannot_revoke(self, connection_service, permissions):
        permissions.add_member('other', 'eve', manager=True)
        issued = await _accepted(connection_service)
        with pytest.raises(Unauthorized):
            await connection_service.revoke_connection(issued.connection.id, 'eve')


class TestGrants:
    @pytest.mark.asyncio
    async def test_create_grant_from_initiator(self, connection_service, audit):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'alice',
            resource_type='vet_records', date_from='2025-01-01', forward_only=True,
        )
        assert grant.grantor_tenant_id == 'stable_a'
        assert grant.grantee_tenant_id == 'lab_b'
        assert grant.date_from == date(2025, 1, 1)
        assert await connection_service.is_grant_effective(grant.id)
        [entry] = [
            e for e in audit.find(AuditEventKind.CREATED, connection_id=issued.connection.id)
            if e.grant_id == grant.id
        ]
        assert entry.resource_type == 'vet_records'
        assert entry.scope['includeVeterinary'] is True

    @pytest.mark.asyncio
    async def test_create_grant_from_recipient(self, connection_service):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'carol', resource_type='files',
        )
        assert grant.grantor_tenant_id == 'lab_b'
        assert grant.grantee_tenant_id == 'stable_a'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('kwargs', [
        {'resource_type': 'x_rays'},
        {'resource_type': 'vet_records', 'access_level': 'admin'},
    ])
    async def test_invalid_grant_input(self, connection_service, kwargs):
        issued = await _accepted(connection_service)
        with pytest.raises(InvalidScope):
            await connection_service.create_grant(issued.connection.id, 'alice', **kwargs)

    @pytest.mark.asyncio
    @pytest.mark.asyncio
    async def test_naive_grant_expiry_rejected(self, connection_service, clock):
        issued = await _accepted(connection_service)
        with pytest.raises(InvalidDateRange):
            await connection_service.create_grant(
                issued.connection.id, 'alice',
                resource_type='vet_records',
                expires_at=clock.now.replace(tzinfo=None) + timedelta(days=1),
            )

    @pytest.mark.asyncio
    async def test_foreign_grantor_rejected(self, connection_service):
        issued = await _accepted(connection_service)
        with pytest.raises(Unauthorized):
            await connection_service.create_grant(
                issued.connection.id, 'alice',
                resource_type='vet_records', grantor_tenant_id='other',
            )

    @pytest.mark.asyncio
    async def test_revoking_connection_cascades_without_writing_grant(
        self, connection_service, grants,
    ):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'alice', resource_type='vet_records',
        )
        before = await grants.get(grant.id)
        await connection_service.revoke_connection(issued.connection.id, 'alice')

        assert not await connection_service.is_grant_effective(grant.id)
        after = await grants.get(grant.id)
        assert after == before
        assert after.state is GrantState.ACTIVE

    @pytest.mark.asyncio
    async def test_grant_date_bounds(self, connection_service, clock):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'alice', resource_type='lab_results',
            date_to=clock.now.date(),
        )
        assert await connection_service.is_grant_effective(grant.id)
        clock.advance(days=1)
        assert not await connection_service.is_grant_effective(grant.id)

    @pytest.mark.asyncio
    async def test_revoke_grant_idempotent(self, connection_service, audit):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'alice', resource_type='vet_records',
        )
        first = await connection_service.revoke_grant(grant.id, 'alice')
        second = await connection_service.revoke_grant(grant.id, 'alice')
        assert first.state is GrantState.REVOKED
        assert second.state is GrantState.REVOKED
        revokes = [
            e for e in audit.find(AuditEventKind.REVOKED, connection_id=issued.connection.id)
            if e.grant_id == grant.id
        ]
        assert len(revokes) == 1
        assert not await connection_service.is_grant_effective(grant.id)

    @pytest.mark.asyncio
    async def test_only_grantor_revokes(self, connection_service):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'alice', resource_type='vet_records',
        )
        with pytest.raises(Unauthorized):
            await connection_service.revoke_grant(grant.id, 'carol')

    @pytest.mark.asyncio
    async def test_list_grants_reports_effectiveness(self, connection_service):
        issued = await _accepted(connection_service)
        grant = await connection_service.create_grant(
            issued.connection.id, 'alice', resource_type='vet_records',
        )
        await connection_service.revoke_connection(issued.connection.id, 'carol')
        listed = await connection_service.list_grants(issued.connection.id, 'carol')
        assert [(g.id, eff) for g, eff in listed if g.id == grant.id] == [(grant.id, False)]


class TestBestEffortSteps:
    @pytest.mark.asyncio
    async def test_presets_seeded_after_accept(self, connection_service, dispatcher, grants):
        issued = await _accepted(connection_service)
        await dispatcher.drain()
        seeded = await grants.list_for_connection(issued.connection.id)
        assert [(g.grantor_tenant_id, g.resource_type, g.created_by) for g in seeded] == [
            ('lab_b', 'lab_results', PRESET_ACTOR),
        ]
        assert seeded[0].forward_only is True

    @pytest.mark.asyncio
    async def test_preset_failure_does_not_undo_accept(
        self, connection_service, dispatcher, tenants, connections,
    ):
        async def broken(tenant_id):
            raise RuntimeError('directory down')

        tenants.get_tenant_type = broken
        issued = await _open(connection_service)
        accepted = await connection_service.accept_connection(issued.token, 'carol')
        await dispatcher.drain()
        assert accepted.state is ConnectionState.ACCEPTED
        assert (await connections.get(issued.connection.id)).state is ConnectionState.ACCEPTED
        assert dispatcher.failures == 1

    @pytest.mark.asyncio
    async def test_notifications_sent(self, connection_service, dispatcher, notifier):
        issued = await _accepted(connection_service)
        await connection_service.revoke_connection(issued.connection.id, 'alice')
        await dispatcher.drain()
        events = [event for event, _ in notifier.sent]
        assert 'connection.accepted' in events
        assert 'grant.created' in events
        assert 'connection.revoked' in events

    @pytest.mark.asyncio
    async def test_notifier_failure_is_isolated(self, connection_service, dispatcher, notifier):
        async def broken(event, payload):
            raise RuntimeError('smtp down')

        notifier.notify = broken
        issued = await _open(connection_service)
        accepted = await connection_service.accept_connection(issued.token, 'carol')
        await dispatcher.drain()
        assert accepted.state is ConnectionState.ACCEPTED
        assert dispatcher.failures >= 1
