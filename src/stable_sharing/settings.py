"""Sharing service configuration settings.

SharingSettings is the single configuration object accepted by create_app().
It is a plain dataclass (not env-coupled) so tests can inject config without
touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_PUBLIC_BASE_URL = "http://localhost:5173"
DEFAULT_RESOLVE_TIMEOUT_SECONDS = 10.0
DEFAULT_EXPIRY_SWEEP_SECONDS = 3600.0
DEFAULT_CORS_ORIGINS: tuple[str, ...] = (
    "http://localhost:5173",
    "http://localhost:3000",
)


@dataclass(frozen=True, slots=True)
class SharingSettings:
    """Configuration for the sharing FastAPI application.

    All fields have sensible defaults for local development.
    Non-local environments must supply real values for supabase_url,
    supabase_service_role_key, and supabase_jwt_secret.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Supabase ───────────────────────────────────────────────────
    supabase_url: str = ""
    """Supabase project URL (e.g. https://xyz.supabase.co)."""

    supabase_service_role_key: str = ""
    """Supabase service-role key for PostgREST calls. Never log this."""

    supabase_jwt_secret: str = ""
    """HS256 secret used to verify caller access tokens."""

    # ── Public links ───────────────────────────────────────────────
    public_base_url: str = DEFAULT_PUBLIC_BASE_URL
    """Origin used to build ``/share/horse/{token}`` links."""

    resolve_timeout_seconds: float = DEFAULT_RESOLVE_TIMEOUT_SECONDS
    """Upper bound on one public token resolution before a retryable error."""

    expiry_sweep_seconds: float = DEFAULT_EXPIRY_SWEEP_SECONDS
    """Interval for retiring expired connection invitations. 0 disables."""

    # ── Notifications ──────────────────────────────────────────────
    notify_webhook_url: str = ""
    """Optional endpoint that receives connection/grant notifications."""

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.resolve_timeout_seconds <= 0:
            errors.append("resolve_timeout_seconds must be > 0")
        if self.expiry_sweep_seconds < 0:
            errors.append("expiry_sweep_seconds must be >= 0")
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if not self.supabase_jwt_secret or len(self.supabase_jwt_secret) < 32:
                errors.append(
                    f"{self.environment}: supabase_jwt_secret must be >= 32 characters"
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> SharingSettings:
        """Build settings from environment variables.

        Tests should construct SharingSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get("CORS_ORIGINS", "")
        cors = (
            tuple(o.strip() for o in cors_raw.split(",") if o.strip())
            if cors_raw
            else DEFAULT_CORS_ORIGINS
        )

        timeout_raw = env.get("SHARE_RESOLVE_TIMEOUT_SECONDS", "")
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_RESOLVE_TIMEOUT_SECONDS
        except ValueError:
            timeout = -1.0  # Surfaces through validate().

        sweep_raw = env.get("EXPIRY_SWEEP_SECONDS", "")
        try:
            sweep = float(sweep_raw) if sweep_raw else DEFAULT_EXPIRY_SWEEP_SECONDS
        except ValueError:
            sweep = -1.0

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            supabase_jwt_secret=env.get("SUPABASE_JWT_SECRET", ""),
            public_base_url=env.get("PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL),
            resolve_timeout_seconds=timeout,
            expiry_sweep_seconds=sweep,
            notify_webhook_url=env.get("NOTIFY_WEBHOOK_URL", ""),
            cors_origins=cors,
        )
