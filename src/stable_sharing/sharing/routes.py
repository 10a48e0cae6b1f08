"""Share-token, share-pack and sharing-audit management endpoints.

  POST   /api/v1/tenants/{tenant_id}/shares                 → issue share token
  GET    /api/v1/tenants/{tenant_id}/shares?subject_id=     → list shares of a horse
  DELETE /api/v1/tenants/{tenant_id}/shares/{share_id}      → revoke share
  POST   /api/v1/tenants/{tenant_id}/lab-result-shares      → link to one final lab result
  GET    /api/v1/tenants/{tenant_id}/lab-result-shares?result_id=
  DELETE /api/v1/tenants/{tenant_id}/lab-result-shares/{share_id}
  POST   /api/v1/tenants/{tenant_id}/media-shares           → link to one media asset
  GET    /api/v1/tenants/{tenant_id}/media-shares?asset_id=
  DELETE /api/v1/tenants/{tenant_id}/media-shares/{share_id}
  GET    /api/v1/tenants/{tenant_id}/share-packs            → system + tenant packs
  PUT    /api/v1/tenants/{tenant_id}/share-packs/{key}      → create/replace tenant pack
  DELETE /api/v1/tenants/{tenant_id}/share-packs/{key}      → delete tenant pack
  GET    /api/v1/tenants/{tenant_id}/sharing-audit          → audit page, newest first

Auth contract:
  - All endpoints require an authenticated identity (AuthIdentity).
  - Membership and the manage-sharing capability are checked by the
    services; failures come back as 403 ``unauthorized``.

Token security:
  - The plaintext token is returned exactly once, in the create response.
  - Listings carry ``token_prefix`` only.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime, BaseModel, Field

from ..api_errors import error_response
from ..audit import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ..errors import SharingError
from ..scope import ScopeDescriptor
from ..security.auth_guard import get_auth_identity
from ..security.token_verify import AuthIdentity
from .model import SubjectKind
from .packs import SharePackCatalog
from .service import (
    CreateShareOptions,
    IssuedShare,
    ListedShare,
    ShareListing,
    ShareService,
)


# ── Request schemas ──────────────────────────────────────────────────


class CreateShareRequest(BaseModel):
    """Request body for share token creation.

    Give ``pack_key`` or ``custom_scope`` (stored JSON shape, e.g.
    ``{"includeVeterinary": true}``). Neither selects the summary pack.
    """

    subject_id: str = Field(..., min_length=1, description='Horse to share')
    pack_key: str | None = None
    custom_scope: dict[str, Any] | None = None
    date_from: str | None = None
    date_to: str | None = None
    recipient_email: str | None = None
    expires_at: AwareDatetime | None = None


class CreateLabResultShareRequest(BaseModel):
    result_id: str = Field(..., min_length=1)
    use_alias: bool = False
    expires_at: AwareDatetime | None = None


class CreateMediaShareRequest(BaseModel):
    asset_id: str = Field(..., min_length=1)
    expires_at: AwareDatetime | None = None


class SavePackRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    scope: dict[str, Any] = Field(default_factory=dict)


def _listed(item: ListedShare) -> dict[str, Any]:
    return {**item.share.to_dict(), 'state': item.state.value}


def _listing_body(listing: ShareListing) -> dict[str, Any]:
    return {
        'active': [_listed(s) for s in listing.active],
        'inactive': [_listed(s) for s in listing.inactive],
    }


def _issued_body(issued: IssuedShare) -> dict[str, Any]:
    return {
        'share': issued.share.to_dict(),
        'token': issued.token,
        'url': issued.url,
    }


# ── Route factory ────────────────────────────────────────────────────


def create_share_router(
    share_service: ShareService,
    catalog: SharePackCatalog,
) -> APIRouter:
    """Create the share management router with injected services."""
    router = APIRouter(prefix='/api/v1/tenants/{tenant_id}', tags=['horse-shares'])

    @router.post('/shares', status_code=201)
    async def create_share(
        tenant_id: str,
        body: CreateShareRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Issue a share token. Returns 201 with the token (once only)."""
        try:
            custom = (
                ScopeDescriptor.from_dict(body.custom_scope)
                if body.custom_scope is not None else None
            )
            issued = await share_service.create_share(
                body.subject_id,
                tenant_id,
                identity.user_id,
                CreateShareOptions(
                    pack_key=body.pack_key,
                    custom_scope=custom,
                    date_from=body.date_from,
                    date_to=body.date_to,
                    recipient_email=body.recipient_email,
                    expires_at=body.expires_at,
                ),
            )
        except SharingError as exc:
            return error_response(exc)
        return _issued_body(issued)

    @router.get('/shares')
    async def list_shares(
        tenant_id: str,
        subject_id: str = Query(..., min_length=1),
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            listing = await share_service.list_shares(tenant_id, subject_id, identity.user_id)
        except SharingError as exc:
            return error_response(exc)
        return _listing_body(listing)

    @router.delete('/shares/{share_id}')
    async def revoke_share(
        tenant_id: str,
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Revoke a share. Idempotent."""
        try:
            share = await share_service.revoke_share(
                share_id, identity.user_id, tenant_id=tenant_id,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'share': share.to_dict()}

    # ── Lab result and media links ───────────────────────────────────

    @router.post('/lab-result-shares', status_code=201)
    async def create_lab_result_share(
        tenant_id: str,
        body: CreateLabResultShareRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Issue a link to one final lab result. Returns the token once."""
        try:
            issued = await share_service.create_lab_result_share(
                body.result_id,
                tenant_id,
                identity.user_id,
                use_alias=body.use_alias,
                expires_at=body.expires_at,
            )
        except SharingError as exc:
            return error_response(exc)
        return _issued_body(issued)

    @router.get('/lab-result-shares')
    async def list_lab_result_shares(
        tenant_id: str,
        result_id: str = Query(..., min_length=1),
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            listing = await share_service.list_shares(
                tenant_id, result_id, identity.user_id, kind=SubjectKind.LAB_RESULT,
            )
        except SharingError as exc:
            return error_response(exc)
        return _listing_body(listing)

    @router.delete('/lab-result-shares/{share_id}')
    async def revoke_lab_result_share(
        tenant_id: str,
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            share = await share_service.revoke_share(
                share_id, identity.user_id,
                tenant_id=tenant_id, kind=SubjectKind.LAB_RESULT,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'share': share.to_dict()}

    @router.post('/media-shares', status_code=201)
    async def create_media_share(
        tenant_id: str,
        body: CreateMediaShareRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            issued = await share_service.create_media_share(
                body.asset_id,
                tenant_id,
                identity.user_id,
                expires_at=body.expires_at,
            )
        except SharingError as exc:
            return error_response(exc)
        return _issued_body(issued)

    @router.get('/media-shares')
    async def list_media_shares(
        tenant_id: str,
        asset_id: str = Query(..., min_length=1),
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            listing = await share_service.list_shares(
                tenant_id, asset_id, identity.user_id, kind=SubjectKind.MEDIA,
            )
        except SharingError as exc:
            return error_response(exc)
        return _listing_body(listing)

    @router.delete('/media-shares/{share_id}')
    async def revoke_media_share(
        tenant_id: str,
        share_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            share = await share_service.revoke_share(
                share_id, identity.user_id,
                tenant_id=tenant_id, kind=SubjectKind.MEDIA,
            )
        except SharingError as exc:
            return error_response(exc)
        return {'share': share.to_dict()}

    # ── Packs ────────────────────────────────────────────────────────

    @router.get('/share-packs')
    async def list_packs(
        tenant_id: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            packs = await catalog.list_packs(tenant_id, identity.user_id)
        except SharingError as exc:
            return error_response(exc)
        return {'packs': [p.to_dict() for p in packs]}

    @router.put('/share-packs/{key}')
    async def save_pack(
        tenant_id: str,
        key: str,
        body: SavePackRequest,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            pack = await catalog.save_pack(
                tenant_id,
                identity.user_id,
                key=key,
                name=body.name,
                description=body.description,
                scope=ScopeDescriptor.from_dict(body.scope),
            )
        except SharingError as exc:
            return error_response(exc)
        return {'pack': pack.to_dict()}

    @router.delete('/share-packs/{key}')
    async def delete_pack(
        tenant_id: str,
        key: str,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        try:
            await catalog.delete_pack(tenant_id, identity.user_id, key)
        except SharingError as exc:
            return error_response(exc)
        return JSONResponse(status_code=200, content={'deleted': key})

    # ── Audit ────────────────────────────────────────────────────────

    @router.get('/sharing-audit')
    async def list_audit(
        tenant_id: str,
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        before: AwareDatetime | None = None,
        identity: AuthIdentity = Depends(get_auth_identity),
    ):
        """Newest-first page; pass ``next_before`` back to continue."""
        try:
            entries = await share_service.list_audit(
                tenant_id, identity.user_id, limit=limit, before=before,
            )
        except SharingError as exc:
            return error_response(exc)
        next_before = entries[-1].created_at.isoformat() if len(entries) == limit else None
        return {
            'entries': [e.to_dict() for e in entries],
            'next_before': next_before,
        }

    return router
