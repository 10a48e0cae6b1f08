"""Connection state-machine exhaustiveness."""

from __future__ import annotations

import itertools

import pytest

from stable_sharing.connections.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    ConnectionOperation,
    ConnectionState,
    next_state,
)
from stable_sharing.errors import InvalidState

EXPECTED = {
    (ConnectionState.PENDING, ConnectionOperation.ACCEPT): ConnectionState.ACCEPTED,
    (ConnectionState.PENDING, ConnectionOperation.REJECT): ConnectionState.REJECTED,
    (ConnectionState.ACCEPTED, ConnectionOperation.REVOKE): ConnectionState.REVOKED,
}


@pytest.mark.parametrize(
    'state,operation',
    list(itertools.product(ConnectionState, ConnectionOperation)),
)
def test_every_pair(state, operation):
    expected = EXPECTED.get((state, operation))
    if expected is None:
        with pytest.raises(InvalidState) as info:
            next_state(state, operation)
        assert info.value.from_state == state.value
        assert info.value.operation == operation.value
    else:
        assert next_state(state, operation) is expected


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert dict(ALLOWED_TRANSITIONS[state]) == {}


def test_accepts_plain_strings():
    assert next_state('pending', 'accept') is ConnectionState.ACCEPTED


def test_error_detail_names_state_and_operation():
    with pytest.raises(InvalidState, match="cannot accept from state 'revoked'"):
        next_state(ConnectionState.REVOKED, ConnectionOperation.ACCEPT)


def test_transition_table_is_read_only():
    with pytest.raises(TypeError):
        ALLOWED_TRANSITIONS[ConnectionState.REVOKED] = {}  # type: ignore[index]
