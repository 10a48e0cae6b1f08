"""Conversions between PostgREST JSON values and Python types."""

from __future__ import annotations

from datetime import date, datetime, timezone


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_day(value: str | None) -> date | None:
    return date.fromisoformat(value[:10]) if value else None


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
