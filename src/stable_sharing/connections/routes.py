"""Connection handshake and consent-grant endpoints.

  POST /api/v1/connections                      → open a pending connection
  POST /api/v1/connections/accept               → recipient accepts (by token)
  POST /api/v1/connections/reject               → recipient rejects (by token)
  POST /api/v1/connections/{connection_id}/revoke
  GET  /api/v1/tenants/{tenant_id}/connections  → connections of a tenant
  GET  /api/v1/connections/{connection_id}/grants
  POST /api/v1/connections/{connection_id}/grants
  POST /api/v1/grants/{grant_id}/revoke
  GET  /api/v1/grants/{grant_id}/view?subject_id=

All endpoints require an authenticated identity. The handshake token is
returned once, to the initiator, in the create response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from pydantic import AwareDatetime, BaseModel, Field

from ..api_errors import error_response
from ..errors import SharingError
from ..security.auth_guard import get_auth_identity
from ..security.token_verify import AuthIdentity
from ..sharing.resolver import ShareViewResolver
from .service import ConnectionService


# ── Request schemas ──────────────────────────────────────────────────


class CreateConnectionRequest(BaseModel):
    initiator_tenant_id: str = Field(..., min_length=1)
    connection_type: str = Field(..., description='b2b, b2c or employment')
    recipient_tenant_id: str | None = None
    recipient_profile_id: str | None = None
    recipient_email: str | None = None
    expires_at: AwareDatetime | None = None


class RespondRequest(BaseModel):
    token: str = Field(..., min_length=1)
    reason: str | None = None


class CreateGrantRequest(BaseModel):
    resource_type: str
    access_level: str = 'read'
    grantor_tenant_id: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    forward_only: bool = False
    resource_ids: list[str] | None = None
    expires_at: AwareDatetime | None = None


# ── Route factory ────────────────────────────────────────────────────


def create_connection_router(
    connection_service: ConnectionService,
    resolver: ShareViewResolver,
) -> APIRouter:
    """Create the connection/grant router with injected services."""
    router = APIRouter(prefix='/api/v1', tags=['connections'])

    @router.post('/connections', status_code=201)
    async def create_connection(
        body: CreateConnectionRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            issued = await connection_service.create_connection(
                body.initiator_tenant_id,
                identity.user_id,
                body.connection_type,
                recipient_tenant_id=body.recipient_tenant_id,
                recipient_profile_id=body.recipient_profile_id,
                recipient_email=body.recipient_email,
                expires_at=body.expires_at,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'connection': issued.connection.to_dict(), 'token': issued.token}

    @router.post('/connections/accept')
    async def accept_connection(
        body: RespondRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            connection = await connection_service.accept_connection(body.token, identity.user_id)
        except SharingError as exc:
            return error_response(exc)
        return {'connection': connection.to_dict()}

    @router.post('/connections/reject')
    async def reject_connection(
        body: RespondRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            connection = await connection_service.reject_connection(
                body.token, identity.user_id, body.reason,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'connection': connection.to_dict()}

    @router.post('/connections/{connection_id}/revoke')
    async def revoke_connection(
        connection_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Either party ends an accepted connection; its grants stop applying."""
        try:
            connection = await connection_service.revoke_connection(
                connection_id, identity.user_id,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'connection': connection.to_dict()}

    @router.get('/tenants/{tenant_id}/connections')
    async def list_connections(
        tenant_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            connections = await connection_service.list_connections(tenant_id, identity.user_id)
        except SharingError as exc:
            return error_response(exc)
        return {'connections': [c.to_dict() for c in connections]}

    # ── Grants ───────────────────────────────────────────────────────

    @router.get('/connections/{connection_id}/grants')
    async def list_grants(
        connection_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            grants = await connection_service.list_grants(connection_id, identity.user_id)
        except SharingError as exc:
            return error_response(exc)
        return {
            'grants': [
                {**grant.to_dict(), 'effective': effective}
                for grant, effective in grants
            ],
        }

    @router.post('/connections/{connection_id}/grants', status_code=201)
    async def create_grant(
        connection_id: str,
        body: CreateGrantRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            grant = await connection_service.create_grant(
                connection_id,
                identity.user_id,
                resource_type=body.resource_type,
                access_level=body.access_level,
                grantor_tenant_id=body.grantor_tenant_id,
                date_from=body.date_from,
                date_to=body.date_to,
                forward_only=body.forward_only,
                resource_ids=body.resource_ids,
                expires_at=body.expires_at,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'grant': grant.to_dict()}

    @router.post('/grants/{grant_id}/revoke')
    async def revoke_grant(
        grant_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Grantor-only. Idempotent."""
        try:
            grant = await connection_service.revoke_grant(grant_id, identity.user_id)
        except SharingError as exc:
            return error_response(exc)
        return {'grant': grant.to_dict()}

    @router.get('/grants/{grant_id}/view')
    async def view_grant(
        grant_id: str,
        subject_id: str = Query(..., min_length=1),
        date_from: str | None = None,
        date_to: str | None = None,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Grantee-side read of one subject's records under the grant."""
        try:
            view = await resolver.resolve_grant_view(
                grant_id,
                identity.user_id,
                subject_id,
                date_from=date_from,
                date_to=date_to,
            )
        except SharingError as exc:
            return error_response(exc)
        return jsonable_encoder(view.to_dict())

    return router
