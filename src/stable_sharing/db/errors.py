"""PostgREST rejections as sharing-domain errors.

Each class is a ``StoreError``, so handlers that catch ``SharingError``
also catch a rejected store request. Server-side failures (5xx) never
surface as one of these; ``SupabaseClient`` raises ``StoreUnavailable``
for them instead.

Messages carry PostgREST's own text, never request headers.
"""

from __future__ import annotations

from ..errors import StoreError


class SupabaseError(StoreError):
    """A 4xx PostgREST response, or a payload of the wrong shape."""

    def __init__(
        self,
        *,
        status_code: int,
        message: str,
        pg_code: str | None = None,
        details: str | None = None,
        hint: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.pg_code = pg_code
        self.details = details
        self.hint = hint
        text = f"status {status_code}: {message}"
        if pg_code:
            text += f" (pg {pg_code})"
        super().__init__(text)


class SupabaseAuthError(SupabaseError):
    """401/403: bad service key or a row-level security rejection."""


class SupabaseNotFoundError(SupabaseError):
    """404: missing table, view or RPC."""


class SupabaseConflictError(SupabaseError):
    """409: unique or partial-index violation, e.g. a second open connection."""


_BY_STATUS: dict[int, type[SupabaseError]] = {
    401: SupabaseAuthError,
    403: SupabaseAuthError,
    404: SupabaseNotFoundError,
    409: SupabaseConflictError,
}


def error_class_for(status_code: int) -> type[SupabaseError]:
    return _BY_STATUS.get(status_code, SupabaseError)
