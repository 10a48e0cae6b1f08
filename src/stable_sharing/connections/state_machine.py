"""Connection handshake state machine.

Implements the bilateral connection lifecycle:
  pending --accept--> accepted
  pending --reject--> rejected
  accepted --revoke--> revoked

``rejected`` and ``revoked`` are terminal. Every (state, operation) pair
not listed above raises ``InvalidState``.
"""

from __future__ import annotations

import enum
from types import MappingProxyType

from ..errors import InvalidState


class ConnectionState(str, enum.Enum):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    REVOKED = 'revoked'


class ConnectionOperation(str, enum.Enum):
    ACCEPT = 'accept'
    REJECT = 'reject'
    REVOKE = 'revoke'


TERMINAL_STATES = frozenset({ConnectionState.REJECTED, ConnectionState.REVOKED})
ACTIVE_STATES = frozenset({ConnectionState.PENDING, ConnectionState.ACCEPTED})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        ConnectionState.PENDING: MappingProxyType({
            ConnectionOperation.ACCEPT: ConnectionState.ACCEPTED,
            ConnectionOperation.REJECT: ConnectionState.REJECTED,
        }),
        ConnectionState.ACCEPTED: MappingProxyType({
            ConnectionOperation.REVOKE: ConnectionState.REVOKED,
        }),
        ConnectionState.REJECTED: MappingProxyType({}),
        ConnectionState.REVOKED: MappingProxyType({}),
    }
)


def next_state(
    state: ConnectionState | str,
    operation: ConnectionOperation | str,
) -> ConnectionState:
    """Target state for ``operation`` from ``state``.

    Raises:
        InvalidState: the pair is not an allowed transition.
    """
    current = ConnectionState(state)
    op = ConnectionOperation(operation)
    target = ALLOWED_TRANSITIONS[current].get(op)
    if target is None:
        raise InvalidState(from_state=current.value, operation=op.value)
    return target
