"""Scope descriptor: which record categories are visible, and when.

A ``ScopeDescriptor`` is an immutable value object. It is built once when a
share, pack or grant is created and never mutated afterwards; narrowing is
done by ``intersect`` which always returns a new descriptor that is a subset
of both inputs.

Serialization is fail-closed: a flag missing from stored JSON reads as
``False``, unknown keys are ignored.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from .errors import InvalidDateRange, InvalidScope


class Capability(str, enum.Enum):
    """Record categories a scope can expose."""

    VETERINARY = 'veterinary'
    LABORATORY = 'laboratory'
    FILES = 'files'
    BREEDING = 'breeding'


# Capability -> ScopeDescriptor attribute.
_FLAG_FOR: dict[Capability, str] = {
    Capability.VETERINARY: 'include_veterinary',
    Capability.LABORATORY: 'include_laboratory',
    Capability.FILES: 'include_files',
    Capability.BREEDING: 'include_breeding',
}

# Stored JSON keys. The short aliases are what older rows carry.
_JSON_KEYS: dict[Capability, tuple[str, ...]] = {
    Capability.VETERINARY: ('includeVeterinary', 'includeVet'),
    Capability.LABORATORY: ('includeLaboratory', 'includeLab'),
    Capability.FILES: ('includeFiles',),
    Capability.BREEDING: ('includeBreeding',),
}


def parse_date(value: date | str | None) -> date | None:
    """Accept a ``date``, an ISO date/datetime string, or None."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise InvalidDateRange(f'not an ISO date: {value!r}') from exc


def record_day(record: Mapping[str, Any]) -> date | None:
    """Creation date of a record, or None when it cannot be determined."""
    value = record.get('created_at')
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def check_date_range(date_from: date | None, date_to: date | None) -> None:
    if date_from is not None and date_to is not None and date_from > date_to:
        raise InvalidDateRange(
            f'date_from {date_from.isoformat()} is after date_to {date_to.isoformat()}'
        )


def require_aware(value: datetime | None, name: str = 'expires_at') -> None:
    """Reject a naive timestamp; expiry is compared against an aware UTC clock."""
    if value is not None and (value.tzinfo is None or value.utcoffset() is None):
        raise InvalidDateRange(f'{name} must carry a timezone')


@dataclass(frozen=True, slots=True)
class ScopeDescriptor:
    """Visible categories plus an optional inclusive date window.

    An absent bound means unbounded in that direction.
    """

    include_veterinary: bool = False
    include_laboratory: bool = False
    include_files: bool = False
    include_breeding: bool = False
    date_from: date | None = None
    date_to: date | None = None

    def __post_init__(self) -> None:
        check_date_range(self.date_from, self.date_to)

    # ── Constructors ─────────────────────────────────────────────────

    @classmethod
    def of(
        cls,
        capabilities: Iterable[Capability | str],
        *,
        date_from: date | str | None = None,
        date_to: date | str | None = None,
    ) -> ScopeDescriptor:
        flags: dict[str, bool] = {}
        for cap in capabilities:
            try:
                flags[_FLAG_FOR[Capability(cap)]] = True
            except ValueError as exc:
                raise InvalidScope(f'unknown capability {cap!r}') from exc
        return cls(
            **flags,
            date_from=parse_date(date_from),
            date_to=parse_date(date_to),
        )

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any] | None,
        *,
        date_from: date | str | None = None,
        date_to: date | str | None = None,
    ) -> ScopeDescriptor:
        """Build from stored JSON. Missing flags are ``False``."""
        data = data or {}
        caps = [
            cap for cap, keys in _JSON_KEYS.items()
            if any(data.get(k) is True for k in keys)
        ]
        return cls.of(
            caps,
            date_from=date_from if date_from is not None else data.get('dateFrom'),
            date_to=date_to if date_to is not None else data.get('dateTo'),
        )

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset(
            cap for cap, attr in _FLAG_FOR.items() if getattr(self, attr)
        )

    def includes(self, capability: Capability) -> bool:
        return getattr(self, _FLAG_FOR[capability])

    @property
    def is_empty(self) -> bool:
        return not self.capabilities

    def contains(self, day: date) -> bool:
        if self.date_from is not None and day < self.date_from:
            return False
        if self.date_to is not None and day > self.date_to:
            return False
        return True

    # ── Algebra ──────────────────────────────────────────────────────

    def intersect(self, other: ScopeDescriptor | None) -> ScopeDescriptor:
        """Return the scope permitted by both ``self`` and ``other``.

        Disjoint date windows leave no categories visible; the window of
        ``self`` is kept so the result stays a valid descriptor.
        """
        if other is None:
            return self
        caps = self.capabilities & other.capabilities
        date_from = _max_bound(self.date_from, other.date_from)
        date_to = _min_bound(self.date_to, other.date_to)
        if date_from is not None and date_to is not None and date_from > date_to:
            return ScopeDescriptor(date_from=self.date_from, date_to=self.date_to)
        return ScopeDescriptor.of(caps, date_from=date_from, date_to=date_to)

    def with_window(
        self, date_from: date | None, date_to: date | None,
    ) -> ScopeDescriptor:
        """Narrow the date window (never widens it)."""
        return self.intersect(
            ScopeDescriptor.of(Capability, date_from=date_from, date_to=date_to)
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored JSON shape (also the audit snapshot)."""
        out: dict[str, Any] = {
            _JSON_KEYS[cap][0]: getattr(self, attr)
            for cap, attr in _FLAG_FOR.items()
        }
        out['dateFrom'] = self.date_from.isoformat() if self.date_from else None
        out['dateTo'] = self.date_to.isoformat() if self.date_to else None
        return out


def _max_bound(a: date | None, b: date | None) -> date | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _min_bound(a: date | None, b: date | None) -> date | None:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)
