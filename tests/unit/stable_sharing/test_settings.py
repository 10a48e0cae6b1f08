"""SharingSettings validation and environment parsing."""

from __future__ import annotations

from stable_sharing.settings import (
    DEFAULT_CORS_ORIGINS,
    DEFAULT_EXPIRY_SWEEP_SECONDS,
    DEFAULT_RESOLVE_TIMEOUT_SECONDS,
    SharingSettings,
)

SECRET = "s" * 32


class TestValidate:
    def test_local_defaults_are_valid(self):
        assert SharingSettings().validate() == []

    def test_non_local_requires_supabase(self):
        errors = SharingSettings(environment="production").validate()
        assert "production: supabase_url is required" in errors
        assert "production: supabase_service_role_key is required" in errors
        assert any("supabase_jwt_secret" in e for e in errors)

    def test_short_jwt_secret(self):
        settings = SharingSettings(
            environment="staging",
            supabase_url="https://x.supabase.co",
            supabase_service_role_key="svc",
            supabase_jwt_secret="short",
        )
        assert settings.validate() == ["staging: supabase_jwt_secret must be >= 32 characters"]

    def test_bad_intervals(self):
        errors = SharingSettings(resolve_timeout_seconds=0, expiry_sweep_seconds=-1).validate()
        assert errors == [
            "resolve_timeout_seconds must be > 0",
            "expiry_sweep_seconds must be >= 0",
        ]


class TestFromEnv:
    def test_empty_env_uses_defaults(self):
        settings = SharingSettings.from_env({})
        assert settings.environment == "local"
        assert settings.resolve_timeout_seconds == DEFAULT_RESOLVE_TIMEOUT_SECONDS
        assert settings.expiry_sweep_seconds == DEFAULT_EXPIRY_SWEEP_SECONDS
        assert settings.cors_origins == DEFAULT_CORS_ORIGINS

    def test_reads_values(self):
        settings = SharingSettings.from_env({
            "ENVIRONMENT": "dev",
            "SUPABASE_URL": "https://x.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "svc",
            "SUPABASE_JWT_SECRET": SECRET,
            "PUBLIC_BASE_URL": "https://stable.example.com",
            "SHARE_RESOLVE_TIMEOUT_SECONDS": "2.5",
            "EXPIRY_SWEEP_SECONDS": "0",
            "NOTIFY_WEBHOOK_URL": "https://hooks.example.com/sharing",
            "CORS_ORIGINS": "https://a.example.com, https://b.example.com,",
        })
        assert settings.validate() == []
        assert settings.resolve_timeout_seconds == 2.5
        assert settings.expiry_sweep_seconds == 0
        assert settings.cors_origins == ("https://a.example.com", "https://b.example.com")
        assert settings.notify_webhook_url == "https://hooks.example.com/sharing"

    def test_garbage_numbers_fail_validation(self):
        settings = SharingSettings.from_env({
            "SHARE_RESOLVE_TIMEOUT_SECONDS": "soon",
            "EXPIRY_SWEEP_SECONDS": "hourly",
        })
        assert len(settings.validate()) == 2
