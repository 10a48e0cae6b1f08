"""HTTP tests for the share, pack, audit, connection and public access routes.

Validates:
  - Domain errors map to stable status codes and ``error`` values.
  - The plaintext token appears once, in the create response.
  - Every public-link denial returns the same 404 body with no-store.
  - A store timeout or rejection on the public link is a retryable 503.
  - Lab result and media links over HTTP.
  - The connection handshake and grant lifecycle over HTTP.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from stable_sharing.api_errors import SHARE_UNAVAILABLE_BODY
from stable_sharing.connections.routes import create_connection_router
from stable_sharing.db.errors import SupabaseError
from stable_sharing.security.token_verify import AuthIdentity
from stable_sharing.sharing.access import create_share_access_router
from stable_sharing.sharing.resolver import ShareViewResolver
from stable_sharing.sharing.routes import create_share_router
from stable_sharing.sharing.service import ShareService

SHARES = '/api/v1/tenants/stable_a/shares'
PACKS = '/api/v1/tenants/stable_a/share-packs'
PUBLIC = '/api/v1/public/shares/horse'
LAB_SHARES = '/api/v1/tenants/lab_b/lab-result-shares'
MEDIA_SHARES = '/api/v1/tenants/stable_a/media-shares'


# ── Test helpers ──────────────────────────────────────────────────────


def _make_app(share_service, catalog, connection_service, resolver, *, auth: bool = True) -> FastAPI:
    """Routers plus a fake auth layer; ``X-Test-User`` picks the actor."""
    app = FastAPI()
    app.include_router(create_share_access_router(resolver))
    app.include_router(create_share_router(share_service, catalog))
    app.include_router(create_connection_router(connection_service, resolver))

    if auth:
        @app.middleware('http')
        async def fake_auth(request: Request, call_next):
            user_id = request.headers.get('x-test-user', 'alice')
            request.state.auth_identity = AuthIdentity(
                user_id=user_id,
                email=f'{user_id}@test.com',
                role='authenticated',
            )
            return await call_next(request)

    return app


@pytest.fixture
def app(share_service, catalog, connection_service, resolver):
    return _make_app(share_service, catalog, connection_service, resolver)


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as c:
        yield c


def _as(user: str) -> dict[str, str]:
    return {'x-test-user': user}


async def _create_share(client, **body):
    body.setdefault('subject_id', 'horse_1')
    resp = await client.post(SHARES, json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


# =====================================================================
# Share management
# =====================================================================


class TestShareRoutes:
    @pytest.mark.asyncio
    async def test_create_returns_token_once(self, client):
        body = await _create_share(client, pack_key='vet-only')
        token = body['token']
        assert body['url'].endswith(f'/share/horse/{token}')
        assert 'token_hash' not in body['share']

        listed = await client.get(SHARES, params={'subject_id': 'horse_1'})
        assert listed.status_code == 200
        [item] = listed.json()['active']
        assert item['token_prefix'] == token[:8]
        assert item['state'] == 'active'
        assert token not in listed.text

    @pytest.mark.asyncio
    async def test_plain_member_gets_403(self, client):
        resp = await client.post(SHARES, json={'subject_id': 'horse_1'}, headers=_as('bob'))
        assert resp.status_code == 403
        assert resp.json()['error'] == 'unauthorized'

    @pytest.mark.asyncio
    @pytest.mark.parametrize('body,status,error', [
        ({'pack_key': 'full', 'custom_scope': {'includeFiles': True}}, 400, 'invalid_scope'),
        ({'pack_key': 'ghost'}, 404, 'not_found'),
        ({'date_from': '2025-02-01', 'date_to': '2025-01-01'}, 400, 'invalid_date_range'),
        ({'subject_id': 'horse_9'}, 404, 'not_found'),
    ])
    async def test_create_errors(self, client, body, status, error):
        body = {'subject_id': 'horse_1', **body}
        resp = await client.post(SHARES, json=body)
        assert resp.status_code == status
        assert resp.json()['error'] == error

    @pytest.mark.asyncio
    async def test_naive_expiry_is_rejected(self, client):
        resp = await client.post(
            SHARES, json={'subject_id': 'horse_1', 'expires_at': '2030-01-01T00:00:00'},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_store_rejection_is_502_without_store_text(
        self, catalog, subjects, permissions, audit, connection_service, resolver, clock,
    ):
        class RejectingShares:
            async def create(self, share):
                raise SupabaseError(status_code=400, message='column horse_shares.scope is missing')

        service = ShareService(RejectingShares(), catalog, subjects, permissions, audit, clock=clock)
        app = _make_app(service, catalog, connection_service, resolver)
        async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as c:
            resp = await c.post(SHARES, json={'subject_id': 'horse_1'})
        assert resp.status_code == 502
        assert resp.json()['error'] == 'store_error'
        assert resp.json()['retryable'] is False
        assert 'horse_shares' not in resp.text

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, client):
        body = await _create_share(client)
        share_id = body['share']['id']
        first = await client.delete(f'{SHARES}/{share_id}')
        second = await client.delete(f'{SHARES}/{share_id}')
        assert first.status_code == second.status_code == 200
        assert second.json()['share']['state'] == 'revoked'

    @pytest.mark.asyncio
    async def test_revoke_unknown(self, client):
        resp = await client.delete(f'{SHARES}/shr_missing')
        assert resp.status_code == 404


# =====================================================================
# Packs and audit
# =====================================================================


class TestPackAndAuditRoutes:
    @pytest.mark.asyncio
    async def test_pack_lifecycle(self, client):
        saved = await client.put(
            f'{PACKS}/breeding',
            json={'name': 'Breeding', 'scope': {'includeBreeding': True}},
        )
        assert saved.status_code == 200
        assert saved.json()['pack']['scope']['includeBreeding'] is True

        keys = [p['key'] for p in (await client.get(PACKS)).json()['packs']]
        assert 'breeding' in keys and 'summary' in keys

        deleted = await client.delete(f'{PACKS}/breeding')
        assert deleted.json() == {'deleted': 'breeding'}
        assert (await client.delete(f'{PACKS}/breeding')).status_code == 404

    @pytest.mark.asyncio
    async def test_system_pack_is_read_only(self, client):
        resp = await client.put(f'{PACKS}/full', json={'name': 'Mine'})
        assert resp.status_code == 409
        assert resp.json()['error'] == 'read_only_pack'

    @pytest.mark.asyncio
    async def test_audit_paging(self, client, clock):
        await _create_share(client)
        clock.advance(minutes=1)
        await _create_share(client)

        page = await client.get('/api/v1/tenants/stable_a/sharing-audit', params={'limit': 1})
        body = page.json()
        assert len(body['entries']) == 1
        assert body['next_before'] is not None

        rest = await client.get(
            '/api/v1/tenants/stable_a/sharing-audit',
            params={'limit': 1, 'before': body['next_before']},
        )
        assert len(rest.json()['entries']) == 1
        assert rest.json()['entries'][0]['id'] != body['entries'][0]['id']

    @pytest.mark.asyncio
    async def test_audit_limit_bounds(self, client):
        resp = await client.get('/api/v1/tenants/stable_a/sharing-audit', params={'limit': 0})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_audit_requires_membership(self, client):
        resp = await client.get('/api/v1/tenants/stable_a/sharing-audit', headers=_as('carol'))
        assert resp.status_code == 403


# =====================================================================
# Public share link
# =====================================================================


class TestPublicAccess:
    @pytest.mark.asyncio
    async def test_resolves_scoped_view(self, client):
        token = (await _create_share(client, pack_key='vet-only'))['token']
        resp = await client.get(f'{PUBLIC}/{token}', headers={'x-test-user': 'nobody'})
        assert resp.status_code == 200
        assert resp.headers['cache-control'] == 'no-store'
        body = resp.json()
        assert body['success'] is True
        assert set(body['data']) == {'horse', 'vet_treatments'}
        assert body['data']['horse']['name'] == 'Comet'

    @pytest.mark.asyncio
    async def test_query_narrows(self, client):
        token = (await _create_share(client, pack_key='full'))['token']
        resp = await client.get(
            f'{PUBLIC}/{token}', params={'categories': 'veterinary', 'date_from': '2025-02-01'},
        )
        data = resp.json()['data']
        assert set(data) == {'horse', 'vet_treatments'}
        assert [r['id'] for r in data['vet_treatments']] == ['vt_2']

    @pytest.mark.asyncio
    @pytest.mark.parametrize('params', [
        {'categories': 'xrays'},
        {'date_from': 'last-week'},
        {'date_from': '2025-03-01', 'date_to': '2025-01-01'},
    ])
    async def test_bad_query_is_400(self, client, params):
        resp = await client.get(f'{PUBLIC}/whatever', params=params)
        assert resp.status_code == 400
        assert resp.json()['error'] == 'invalid_request'

    @pytest.mark.asyncio
    async def test_all_denials_look_the_same(self, client, clock):
        revoked = await _create_share(client)
        await client.delete(f"{SHARES}/{revoked['share']['id']}")
        expired = await _create_share(
            client, expires_at=(clock.now + timedelta(minutes=1)).isoformat(),
        )
        clock.advance(minutes=2)

        bodies = []
        for token in (revoked['token'], expired['token'], 'never-issued'):
            resp = await client.get(f'{PUBLIC}/{token}')
            assert resp.status_code == 404
            assert resp.headers['cache-control'] == 'no-store'
            bodies.append(resp.json())
        assert bodies == [SHARE_UNAVAILABLE_BODY] * 3

    @pytest.mark.asyncio
    async def test_store_timeout_is_retryable_503(
        self, share_service, shares, catalog, subjects, audit, connection_service, clock,
    ):
        class SlowStore:
            async def fetch_records(self, category, subject_id, *, date_from=None, date_to=None):
                await asyncio.sleep(5)
                return []

        slow = ShareViewResolver(
            shares, catalog, subjects, SlowStore(), audit,
            timeout_seconds=0.05, clock=clock,
        )
        app = _make_app(share_service, catalog, connection_service, slow)
        async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as c:
            token = (await _create_share(c, pack_key='vet-only'))['token']
            resp = await c.get(f'{PUBLIC}/{token}')
        assert resp.status_code == 503
        assert resp.json()['retryable'] is True
        assert resp.json()['error'] == 'store_unavailable'


    @pytest.mark.asyncio
    async def test_store_rejection_is_503_not_500(
        self, share_service, shares, catalog, subjects, audit, connection_service, clock,
    ):
        class RejectingStore:
            async def fetch_records(self, category, subject_id, *, date_from=None, date_to=None):
                raise SupabaseError(status_code=400, message='column does not exist', pg_code='42703')

        broken = ShareViewResolver(shares, catalog, subjects, RejectingStore(), audit, clock=clock)
        app = _make_app(share_service, catalog, connection_service, broken)
        async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as c:
            token = (await _create_share(c, pack_key='vet-only'))['token']
            resp = await c.get(f'{PUBLIC}/{token}')
        assert resp.status_code == 503
        assert resp.json() == {
            'error': 'store_unavailable',
            'detail': 'share resolution failed',
            'retryable': True,
        }
        assert '42703' not in resp.text


# =====================================================================
# Lab result and media links
# =====================================================================


class TestRecordShareRoutes:
    @pytest.mark.asyncio
    async def test_lab_result_link_round_trip(self, client):
        resp = await client.post(
            LAB_SHARES, json={'result_id': 'res_1', 'use_alias': True}, headers=_as('carol'),
        )
        assert resp.status_code == 201, resp.text
        token = resp.json()['token']
        assert resp.json()['url'].endswith(f'/shared/lab-result/{token}')

        public = await client.get(f'/api/v1/public/shares/lab-result/{token}')
        assert public.status_code == 200
        assert public.headers['cache-control'] == 'no-store'
        assert public.json()['data']['horse_display_name'] == 'Sample A-17'

        listed = await client.get(LAB_SHARES, params={'result_id': 'res_1'}, headers=_as('carol'))
        [item] = listed.json()['active']
        assert item['subject_kind'] == 'lab_result'
        assert token not in listed.text

        revoked = await client.delete(f"{LAB_SHARES}/{item['id']}", headers=_as('carol'))
        assert revoked.json()['share']['state'] == 'revoked'
        gone = await client.get(f'/api/v1/public/shares/lab-result/{token}')
        assert gone.status_code == 404
        assert gone.json() == SHARE_UNAVAILABLE_BODY

    @pytest.mark.asyncio
    async def test_draft_result_is_409(self, client):
        resp = await client.post(LAB_SHARES, json={'result_id': 'res_2'}, headers=_as('carol'))
        assert resp.status_code == 409
        assert resp.json()['state'] == 'draft'

    @pytest.mark.asyncio
    async def test_media_link_yields_signed_url(self, client):
        resp = await client.post(MEDIA_SHARES, json={'asset_id': 'asset_1'})
        assert resp.status_code == 201, resp.text
        token = resp.json()['token']

        public = await client.get(f'/api/v1/public/shares/media/{token}')
        assert public.status_code == 200
        data = public.json()['data']
        assert data['signed_url'].startswith('memory://horse-media/')
        assert data['filename'] == 'xray.png'

        wrong_kind = await client.get(f'{PUBLIC}/{token}')
        assert wrong_kind.status_code == 404


# =====================================================================
# Connections and grants
# =====================================================================


async def _open_connection(client) -> dict:
    resp = await client.post('/api/v1/connections', json={
        'initiator_tenant_id': 'stable_a',
        'connection_type': 'b2b',
        'recipient_tenant_id': 'lab_b',
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestConnectionRoutes:
    @pytest.mark.asyncio
    async def test_handshake_grant_and_cascade(self, client, dispatcher):
        opened = await _open_connection(client)
        connection_id = opened['connection']['id']
        assert opened['connection']['state'] == 'pending'
        assert 'token_hash' not in opened['connection']

        accepted = await client.post(
            '/api/v1/connections/accept', json={'token': opened['token']}, headers=_as('carol'),
        )
        assert accepted.json()['connection']['state'] == 'accepted'
        await dispatcher.drain()

        created = await client.post(
            f'/api/v1/connections/{connection_id}/grants',
            json={'resource_type': 'vet_records', 'forward_only': True},
        )
        assert created.status_code == 201
        grant_id = created.json()['grant']['id']

        view = await client.get(
            f'/api/v1/grants/{grant_id}/view', params={'subject_id': 'horse_1'}, headers=_as('carol'),
        )
        assert view.status_code == 200
        assert view.json()['grant']['reshare_allowed'] is False
        assert len(view.json()['data']['vet_treatments']) == 2

        revoked = await client.post(f'/api/v1/connections/{connection_id}/revoke', headers=_as('carol'))
        assert revoked.json()['connection']['state'] == 'revoked'

        after = await client.get(
            f'/api/v1/grants/{grant_id}/view', params={'subject_id': 'horse_1'}, headers=_as('carol'),
        )
        assert after.status_code == 409
        grants = (await client.get(f'/api/v1/connections/{connection_id}/grants')).json()['grants']
        mine = [g for g in grants if g['id'] == grant_id]
        assert mine[0]['state'] == 'active'
        assert mine[0]['effective'] is False

    @pytest.mark.asyncio
    async def test_duplicate_connection(self, client):
        first = await _open_connection(client)
        resp = await client.post('/api/v1/connections', json={
            'initiator_tenant_id': 'stable_a',
            'connection_type': 'b2b',
            'recipient_tenant_id': 'lab_b',
        })
        assert resp.status_code == 409
        assert resp.json()['existing_id'] == first['connection']['id']

    @pytest.mark.asyncio
    async def test_reject_then_accept_conflicts(self, client):
        opened = await _open_connection(client)
        rejected = await client.post(
            '/api/v1/connections/reject',
            json={'token': opened['token'], 'reason': 'wrong lab'},
            headers=_as('carol'),
        )
        assert rejected.json()['connection']['reject_reason'] == 'wrong lab'

        resp = await client.post(
            '/api/v1/connections/accept', json={'token': opened['token']}, headers=_as('carol'),
        )
        assert resp.status_code == 409
        assert resp.json()['state'] == 'rejected'

        grant = await client.post(
            f"/api/v1/connections/{opened['connection']['id']}/grants",
            json={'resource_type': 'vet_records'},
        )
        assert grant.status_code == 409
        assert grant.json()['error'] == 'connection_not_accepted'

    @pytest.mark.asyncio
    async def test_initiator_cannot_accept(self, client):
        opened = await _open_connection(client)
        resp = await client.post('/api/v1/connections/accept', json={'token': opened['token']})
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_tenant_listing(self, client):
        await _open_connection(client)
        resp = await client.get('/api/v1/tenants/lab_b/connections', headers=_as('carol'))
        assert [c['initiator_tenant_id'] for c in resp.json()['connections']] == ['stable_a']


# =====================================================================
# Missing identity
# =====================================================================


@pytest.mark.asyncio
async def test_routes_without_identity_are_401(share_service, catalog, connection_service, resolver):
    app = _make_app(share_service, catalog, connection_service, resolver, auth=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as c:
        resp = await c.get(SHARES, params={'subject_id': 'horse_1'})
        public = await c.get(f'{PUBLIC}/unknown')
    assert resp.status_code == 401
    assert public.status_code == 404
