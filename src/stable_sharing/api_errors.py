"""Domain error -> HTTP response mapping shared by the route factories.

Authenticated routes get the precise error code. The public share route
never calls ``error_response`` for a denial; it answers with the single
``share_unavailable_response`` body whatever the reason.
"""

from __future__ import annotations

import logging

from fastapi.responses import JSONResponse

from .errors import (
    DuplicateActive,
    InvalidDateRange,
    InvalidScope,
    InvalidState,
    NotFound,
    NotFoundOrRevoked,
    SharingError,
    StoreError,
    StoreUnavailable,
    Unauthorized,
)

logger = logging.getLogger(__name__)

# First match wins; subclasses must come before their bases.
_STATUS_FOR: tuple[tuple[type[SharingError], int], ...] = (
    (StoreUnavailable, 503),
    (StoreError, 502),
    (NotFoundOrRevoked, 404),
    (NotFound, 404),
    (InvalidState, 409),
    (DuplicateActive, 409),
    (InvalidScope, 400),
    (InvalidDateRange, 400),
    (Unauthorized, 403),
)

SHARE_UNAVAILABLE_BODY = {
    'error': 'share_unavailable',
    'detail': 'This link is no longer available.',
}


def status_for(exc: SharingError) -> int:
    for error_type, status in _STATUS_FOR:
        if isinstance(exc, error_type):
            return status
    return 500


def error_response(exc: SharingError) -> JSONResponse:
    if isinstance(exc, NotFoundOrRevoked):
        return share_unavailable_response()
    content: dict = {'error': exc.code, 'detail': exc.detail}
    if isinstance(exc, StoreError):
        content['retryable'] = exc.retryable
        if not exc.retryable:
            # Store rejections name tables and columns.
            logger.warning('Store rejected a request: %s', exc.detail)
            content['detail'] = 'the data store rejected the request'
    if isinstance(exc, DuplicateActive):
        content['existing_id'] = exc.existing_id
    if isinstance(exc, InvalidState) and exc.from_state:
        content['state'] = exc.from_state
    return JSONResponse(status_code=status_for(exc), content=content)


def share_unavailable_response() -> JSONResponse:
    return JSONResponse(status_code=404, content=dict(SHARE_UNAVAILABLE_BODY))


def validation_response(detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={'error': 'invalid_request', 'detail': detail},
    )
