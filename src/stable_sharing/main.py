"""Sharing service FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires middleware (request-ID, auth guard, CORS), the share,
pack, connection and public access routers, and injects store and
collaborator implementations via dependency injection.

Usage:
    # Local development (in-memory stores)
    from stable_sharing import create_app, SharingSettings
    app = create_app(SharingSettings())

    # Non-local (Supabase stores built from settings)
    app = create_app(SharingSettings.from_env())

    # Testing (full DI control)
    app = create_app(settings, deps=build_inmemory_deps())
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from .audit import InMemorySharingAuditLog, SharingAuditLog
from .connections.model import (
    ConnectionRepository,
    GrantRepository,
    InMemoryConnectionRepository,
    InMemoryGrantRepository,
)
from .connections.presets import TenantTypePresetPolicy
from .connections.routes import create_connection_router
from .connections.service import ConnectionService
from .dispatch import BackgroundDispatcher
from .inmemory import (
    InMemoryNotifier,
    InMemoryRecordStore,
    InMemoryShareableItems,
    InMemorySharingPermissions,
    InMemorySubjectDirectory,
    InMemoryTenantDirectory,
)
from .observability import configure_logging, metrics_text
from .observability.middleware import RequestIdMiddleware, RequestLoggingMiddleware
from .protocols import (
    Notifier,
    RecordStore,
    ShareableItems,
    SharingPermissions,
    SubjectDirectory,
    TenantDirectory,
)
from .security.auth_guard import AuthGuardMiddleware
from .security.token_verify import TokenVerifier, create_token_verifier
from .settings import SharingSettings
from .sharing.access import create_share_access_router
from .sharing.model import InMemoryShareTokenRepository, ShareTokenRepository
from .sharing.packs import InMemorySharePackStore, SharePackCatalog, SharePackStore
from .sharing.resolver import ShareViewResolver
from .sharing.routes import create_share_router
from .sharing.service import ShareService

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 5.0


@dataclass(frozen=True)
class AppDependencies:
    """Container for all injected store and collaborator instances.

    Stored on ``app.state.deps`` so tests can seed and inspect them.
    ``closers`` are awaited on shutdown (HTTP clients).
    """

    shares: ShareTokenRepository
    packs: SharePackStore
    connections: ConnectionRepository
    grants: GrantRepository
    audit: SharingAuditLog
    subjects: SubjectDirectory
    records: RecordStore
    permissions: SharingPermissions
    tenants: TenantDirectory
    items: ShareableItems | None = None
    notifier: Notifier | None = None
    closers: tuple[Callable[[], Awaitable[Any]], ...] = field(default=())


def build_inmemory_deps() -> AppDependencies:
    """Construct all-InMemory dependencies for local development."""
    return AppDependencies(
        shares=InMemoryShareTokenRepository(),
        packs=InMemorySharePackStore(),
        connections=InMemoryConnectionRepository(),
        grants=InMemoryGrantRepository(),
        audit=InMemorySharingAuditLog(),
        subjects=InMemorySubjectDirectory(),
        records=InMemoryRecordStore(),
        permissions=InMemorySharingPermissions(),
        tenants=InMemoryTenantDirectory(),
        items=InMemoryShareableItems(),
        notifier=InMemoryNotifier(),
    )


def build_supabase_deps(settings: SharingSettings) -> AppDependencies:
    """Construct PostgREST-backed dependencies from settings."""
    from .db import (
        SupabaseClient,
        SupabaseConnectionRepository,
        SupabaseGrantRepository,
        SupabaseRecordStore,
        SupabaseSharePackStore,
        SupabaseShareTokenRepository,
        SupabaseShareableItems,
        SupabaseSharingAuditLog,
        SupabaseSharingPermissions,
        SupabaseSubjectDirectory,
        SupabaseTenantDirectory,
    )
    from .notify import WebhookNotifier

    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        timeout_seconds=settings.resolve_timeout_seconds,
    )
    closers: list[Callable[[], Awaitable[Any]]] = [client.aclose]
    notifier = None
    if settings.notify_webhook_url:
        notifier = WebhookNotifier(settings.notify_webhook_url)
        closers.append(notifier.aclose)

    return AppDependencies(
        shares=SupabaseShareTokenRepository(client),
        packs=SupabaseSharePackStore(client),
        connections=SupabaseConnectionRepository(client),
        grants=SupabaseGrantRepository(client),
        audit=SupabaseSharingAuditLog(client),
        subjects=SupabaseSubjectDirectory(client),
        records=SupabaseRecordStore(client),
        permissions=SupabaseSharingPermissions(client),
        tenants=SupabaseTenantDirectory(client),
        items=SupabaseShareableItems(client),
        notifier=notifier,
        closers=tuple(closers),
    )


def _build_token_verifier(settings: SharingSettings) -> TokenVerifier | None:
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        return None
    return create_token_verifier(
        jwt_secret=settings.supabase_jwt_secret or None,
        supabase_url=settings.supabase_url or None,
    )


async def _sweep_expired_invitations(
    service: ConnectionService, interval: float,
) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await service.expire_stale_connections()
        except Exception:
            logger.exception("Expired-invitation sweep failed; retrying next interval")


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: SharingSettings | None = None,
    *,
    deps: AppDependencies | None = None,
    token_verifier: TokenVerifier | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    """Create a configured sharing FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        deps: Store/collaborator overrides. When None, local mode uses
            InMemory implementations and non-local mode builds Supabase ones.
        token_verifier: Bearer verifier override. When None, one is built
            from the JWT secret or project URL if either is configured.
        clock: Time source for every service (tests pin it).

    Raises:
        ValueError: If settings validation fails.
    """
    if settings is None:
        settings = SharingSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            "Sharing settings validation failed:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    if deps is None:
        deps = build_inmemory_deps() if settings.is_local else build_supabase_deps(settings)
    if token_verifier is None:
        token_verifier = _build_token_verifier(settings)

    dispatcher = BackgroundDispatcher()
    catalog = SharePackCatalog(deps.packs, deps.permissions)
    share_service = ShareService(
        deps.shares,
        catalog,
        deps.subjects,
        deps.permissions,
        deps.audit,
        items=deps.items,
        public_base_url=settings.public_base_url,
        clock=clock,
    )
    resolver = ShareViewResolver(
        deps.shares,
        catalog,
        deps.subjects,
        deps.records,
        deps.audit,
        connections=deps.connections,
        grants=deps.grants,
        permissions=deps.permissions,
        items=deps.items,
        timeout_seconds=settings.resolve_timeout_seconds,
        clock=clock,
    )
    connection_service = ConnectionService(
        deps.connections,
        deps.grants,
        deps.audit,
        deps.permissions,
        tenants=deps.tenants,
        presets=TenantTypePresetPolicy(),
        notifier=deps.notifier,
        dispatcher=dispatcher,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("Sharing service startup (environment=%s)", settings.environment)
        sweeper = None
        if settings.expiry_sweep_seconds > 0:
            sweeper = asyncio.create_task(
                _sweep_expired_invitations(connection_service, settings.expiry_sweep_seconds),
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            await dispatcher.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
            for close in deps.closers:
                await close()
            logger.info("Sharing service shutdown")

    app = FastAPI(
        title="Stable Sharing",
        description="Consent-scoped horse record sharing between tenants",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.dispatcher = dispatcher
    app.state.share_service = share_service
    app.state.connection_service = connection_service
    app.state.resolver = resolver

    # ── Middleware stack (applied in reverse order) ──────────────
    # Order of execution: RequestID -> RequestLogging -> AuthGuard -> CORS -> route handler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if token_verifier is not None:
        app.add_middleware(AuthGuardMiddleware, token_verifier=token_verifier)
    else:
        logger.warning("No JWT secret or Supabase URL configured; authenticated routes answer 401")

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "environment": settings.environment,
        }

    @app.get("/metrics")
    async def metrics():
        payload, content_type = metrics_text()
        return Response(content=payload, media_type=content_type)

    app.include_router(create_share_access_router(resolver))
    app.include_router(create_share_router(share_service, catalog))
    app.include_router(create_connection_router(connection_service, resolver))

    return app


# For uvicorn, use --factory flag:
#   uvicorn stable_sharing.main:create_app --factory
# This avoids executing create_app() at import time.
