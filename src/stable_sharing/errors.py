"""Domain error taxonomy for the sharing subsystem.

Every error carries a stable machine-readable ``code`` so callers can map
it to localized text. Authenticated callers receive the precise error;
the public token path collapses everything into ``NotFoundOrRevoked``.
"""

from __future__ import annotations


class SharingError(Exception):
    """Base class for all sharing-domain errors."""

    code = 'sharing_error'

    def __init__(self, detail: str = '') -> None:
        self.detail = detail
        super().__init__(f'{self.code}: {detail}' if detail else self.code)


class NotFound(SharingError):
    """Referenced subject/pack/share/connection/grant is missing or foreign."""

    code = 'not_found'


class InvalidState(SharingError):
    """Operation is not valid for the entity's current lifecycle state."""

    code = 'invalid_state'

    def __init__(
        self,
        detail: str = '',
        *,
        from_state: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.from_state = from_state
        self.operation = operation
        if not detail and from_state and operation:
            detail = f'cannot {operation} from state {from_state!r}'
        super().__init__(detail)


class ConnectionNotAccepted(InvalidState):
    """Grant operation attempted under a connection that is not accepted."""

    code = 'connection_not_accepted'


class ReadOnlyPack(InvalidState):
    """System packs are seed data and cannot be changed."""

    code = 'read_only_pack'


class DuplicateActive(SharingError):
    """An active connection already exists for the pair and type."""

    code = 'duplicate_active'

    def __init__(self, existing_id: str) -> None:
        self.existing_id = existing_id
        super().__init__(f'active connection {existing_id} already exists')


class InvalidScope(SharingError):
    """Malformed scope input (pack/custom scope combination, unknown type)."""

    code = 'invalid_scope'


class InvalidDateRange(SharingError):
    """``date_from`` is after ``date_to``."""

    code = 'invalid_date_range'


class Unauthorized(SharingError):
    """Actor lacks the delegated capability for this operation."""

    code = 'unauthorized'


class NotFoundOrRevoked(SharingError):
    """Generic public-path denial.

    Carries no detail: unknown, revoked, expired and pack-missing tokens
    are indistinguishable to the caller.
    """

    code = 'not_found_or_revoked'

    def __init__(self) -> None:
        super().__init__()


class StoreError(SharingError):
    """The backing store rejected a request."""

    code = 'store_error'
    retryable = False


class StoreUnavailable(StoreError):
    """The backing store timed out, failed or could not be reached. Retryable."""

    code = 'store_unavailable'
    retryable = True
