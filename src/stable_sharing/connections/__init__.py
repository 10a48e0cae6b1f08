"""Bilateral connections between tenants and the consent grants under them."""

from .state_machine import (
    ALLOWED_TRANSITIONS,
    ConnectionOperation,
    ConnectionState,
    next_state,
)
from .model import (
    ACCESS_LEVELS,
    CONNECTION_TYPES,
    RESOURCE_CAPABILITY,
    Connection,
    ConnectionRepository,
    ConsentGrant,
    GrantRepository,
    GrantState,
    InMemoryConnectionRepository,
    InMemoryGrantRepository,
    is_grant_effective,
)
from .presets import (
    DEFAULT_PRESETS,
    GrantPreset,
    NoPresetPolicy,
    PresetPolicy,
    TenantTypePresetPolicy,
)
from .service import ConnectionService, IssuedConnection

__all__ = [
    'ACCESS_LEVELS',
    'ALLOWED_TRANSITIONS',
    'CONNECTION_TYPES',
    'Connection',
    'ConnectionOperation',
    'ConnectionRepository',
    'ConnectionService',
    'ConnectionState',
    'ConsentGrant',
    'DEFAULT_PRESETS',
    'GrantPreset',
    'GrantRepository',
    'GrantState',
    'InMemoryConnectionRepository',
    'InMemoryGrantRepository',
    'IssuedConnection',
    'NoPresetPolicy',
    'PresetPolicy',
    'RESOURCE_CAPABILITY',
    'TenantTypePresetPolicy',
    'is_grant_effective',
    'next_state',
]
