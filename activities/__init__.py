"""Activity definitions module."""

from activities.maintenance import (
    mark_overdue,
    reconcile_pending_payments,
    sync_payment_references,
    MarkOverdueInput,
    ReconcilePendingInput,
    SyncReferencesInput,
    MaintenanceOutput,
)

__all__ = [
    "mark_overdue",
    "reconcile_pending_payments",
    "sync_payment_references",
    "MarkOverdueInput",
    "ReconcilePendingInput",
    "SyncReferencesInput",
    "MaintenanceOutput",
]
