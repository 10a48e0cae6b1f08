"""Prometheus counters for share and grant resolution.

Usage::

    from stable_sharing.observability.metrics import record_resolution

    record_resolution("share", "denied")
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, generate_latest

RESOLUTION_KINDS = frozenset({"share", "grant"})
RESOLUTION_OUTCOMES = frozenset({"ok", "denied", "error"})

SHARING_RESOLUTIONS_TOTAL = Counter(
    "sharing_resolutions_total",
    "Share-token and consent-grant view resolutions by kind and outcome.",
    labelnames=["kind", "outcome"],
    registry=REGISTRY,
)


def record_resolution(kind: str, outcome: str) -> None:
    if kind not in RESOLUTION_KINDS or outcome not in RESOLUTION_OUTCOMES:
        raise ValueError(f"unknown resolution label: kind={kind!r} outcome={outcome!r}")
    SHARING_RESOLUTIONS_TOTAL.labels(kind=kind, outcome=outcome).inc()


def metrics_text() -> tuple[bytes, str]:
    """Return (payload, content_type) for a /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
