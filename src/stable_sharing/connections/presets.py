"""Default consent grants seeded when a connection is accepted.

The policy looks at the declared types of the two tenants and proposes a
set of grants. It is a plug point: the table below is a starting heuristic,
not product truth, and deployments can pass their own ``PresetPolicy`` to
``ConnectionService``.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Protocol

# ── Types ────────────────────────────────────────────────────────────

INITIATOR = 'initiator'
RECIPIENT = 'recipient'


@dataclass(frozen=True, slots=True)
class GrantPreset:
    """One grant to seed. ``grantor`` is ``initiator`` or ``recipient``."""

    grantor: str
    resource_type: str
    access_level: str = 'read'
    forward_only: bool = True


class PresetPolicy(Protocol):
    def presets_for(
        self, initiator_type: str | None, recipient_type: str | None,
    ) -> tuple[GrantPreset, ...]: ...


# ── Policies ─────────────────────────────────────────────────────────

_TYPE_ALIASES = MappingProxyType({
    'lab': 'laboratory',
    'vet': 'clinic',
})

DEFAULT_PRESETS: Mapping[tuple[str, str], tuple[GrantPreset, ...]] = MappingProxyType({
    # A lab serving a stable shares its results with the stable.
    ('laboratory', 'stable'): (GrantPreset(INITIATOR, 'lab_results'),),
    ('stable', 'laboratory'): (GrantPreset(RECIPIENT, 'lab_results'),),
    ('clinic', 'stable'): (GrantPreset(INITIATOR, 'vet_records'),),
    ('stable', 'clinic'): (GrantPreset(RECIPIENT, 'vet_records'),),
})


def _normalize(tenant_type: str | None) -> str | None:
    if not tenant_type:
        return None
    value = tenant_type.strip().lower()
    return _TYPE_ALIASES.get(value, value)


class TenantTypePresetPolicy:
    """Lookup table keyed by (initiator type, recipient type)."""

    def __init__(
        self,
        table: Mapping[tuple[str, str], tuple[GrantPreset, ...]] = DEFAULT_PRESETS,
    ) -> None:
        self._table = table

    def presets_for(
        self, initiator_type: str | None, recipient_type: str | None,
    ) -> tuple[GrantPreset, ...]:
        key = (_normalize(initiator_type), _normalize(recipient_type))
        if None in key:
            return ()
        return tuple(self._table.get(key, ()))


class NoPresetPolicy:
    def presets_for(
        self, initiator_type: str | None, recipient_type: str | None,
    ) -> tuple[GrantPreset, ...]:
        return ()
