"""Supabase/PostgREST persistence for the sharing subsystem."""

from .audit_repo import SupabaseSharingAuditLog
from .collaborators import (
    RecordSource,
    SupabaseRecordStore,
    SupabaseShareableItems,
    SupabaseSharingPermissions,
    SupabaseSubjectDirectory,
    SupabaseTenantDirectory,
)
from .connection_repo import SupabaseConnectionRepository, SupabaseGrantRepository
from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .pack_repo import SupabaseSharePackStore
from .share_repo import SupabaseShareTokenRepository
from .supabase_client import PostgrestFilter, SupabaseClient

__all__ = [
    "PostgrestFilter",
    "RecordSource",
    "SupabaseAuthError",
    "SupabaseClient",
    "SupabaseConflictError",
    "SupabaseConnectionRepository",
    "SupabaseError",
    "SupabaseGrantRepository",
    "SupabaseNotFoundError",
    "SupabaseRecordStore",
    "SupabaseShareableItems",
    "SupabaseSharePackStore",
    "SupabaseShareTokenRepository",
    "SupabaseSharingAuditLog",
    "SupabaseSharingPermissions",
    "SupabaseSubjectDirectory",
    "SupabaseTenantDirectory",
]
