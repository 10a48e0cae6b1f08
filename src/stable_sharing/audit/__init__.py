"""Append-only audit trail for share tokens, connections and grants."""

from .log import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    TOKEN_PREFIX_LENGTH,
    AuditEventKind,
    InMemorySharingAuditLog,
    SharingAuditEntry,
    SharingAuditLog,
    clamp_page_size,
    redact_string,
    redact_token,
)

__all__ = [
    'DEFAULT_PAGE_SIZE',
    'MAX_PAGE_SIZE',
    'TOKEN_PREFIX_LENGTH',
    'AuditEventKind',
    'InMemorySharingAuditLog',
    'SharingAuditEntry',
    'SharingAuditLog',
    'clamp_page_size',
    'redact_string',
    'redact_token',
]
