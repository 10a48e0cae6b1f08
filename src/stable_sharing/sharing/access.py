"""Public share-link read endpoints.

  GET /api/v1/public/shares/horse/{token}        → resolved horse share view
  GET /api/v1/public/shares/lab-result/{token}   → one final lab result
  GET /api/v1/public/shares/media/{token}        → signed URL for one asset

No identity is required: holding the token is the authorization.

Denials:
  - Unknown, revoked, expired, pack-missing and foreign-subject tokens all
    answer 404 with the same body, so a caller cannot tell them apart. A
    token presented under another link kind is unknown there.
  - A store timeout or failure answers 503 with ``retryable: true``.

Optional query parameters narrow what a horse share returns (never widen
it): ``categories`` (comma-separated capability names), ``date_from`` and
``date_to``.
"""

from __future__ import annotations

from typing import Any, Awaitable

from fastapi import APIRouter
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..api_errors import error_response, share_unavailable_response, validation_response
from ..errors import SharingError, StoreUnavailable
from ..scope import Capability, ScopeDescriptor
from .resolver import ShareViewResolver

_NO_STORE = {'Cache-Control': 'no-store'}


def _requested_scope(
    categories: str | None, date_from: str | None, date_to: str | None,
) -> ScopeDescriptor | None:
    if categories is None and date_from is None and date_to is None:
        return None
    caps = (
        [c.strip() for c in categories.split(',') if c.strip()]
        if categories is not None else list(Capability)
    )
    return ScopeDescriptor.of(caps, date_from=date_from, date_to=date_to)


async def _respond(read: Awaitable[Any]) -> JSONResponse:
    try:
        view = await read
    except StoreUnavailable as exc:
        return error_response(exc)
    except SharingError:
        response = share_unavailable_response()
        response.headers.update(_NO_STORE)
        return response
    return JSONResponse(content=jsonable_encoder(view.to_dict()), headers=_NO_STORE)


def create_share_access_router(resolver: ShareViewResolver) -> APIRouter:
    """Create the public share access router."""
    router = APIRouter(prefix='/api/v1/public/shares', tags=['share-access'])

    @router.get('/horse/{token}')
    async def read_share(
        token: str,
        categories: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
    ):
        try:
            requested = _requested_scope(categories, date_from, date_to)
        except SharingError as exc:
            return validation_response(exc.detail)
        return await _respond(resolver.resolve_share_view(token, requested=requested))

    @router.get('/lab-result/{token}')
    async def read_lab_result_share(token: str):
        return await _respond(resolver.resolve_lab_result_share(token))

    @router.get('/media/{token}')
    async def read_media_share(token: str):
        return await _respond(resolver.resolve_media_share(token))

    return router
