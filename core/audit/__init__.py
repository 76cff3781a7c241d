"""Core audit module - audit event tracking and persistence."""

from core.audit.events import (
    AuditLogger,
    AuditEventType,
    InMemoryAuditBackend,
    SQLiteAuditBackend,
    create_audit_event,
    diff_changes,
)

__all__ = [
    "AuditLogger",
    "AuditEventType",
    "InMemoryAuditBackend",
    "SQLiteAuditBackend",
    "create_audit_event",
    "diff_changes",
]
