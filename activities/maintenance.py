"""Billing maintenance activities.

Temporal activities for the periodic passes that keep invoice and payment
state consistent:
- mark_overdue: sent invoices past due become overdue
- reconcile_pending_payments: promote or cancel selected pending payments
- sync_payment_references: backfill invoice payment_reference
"""

import time
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import List, Optional

from temporalio import activity

from core.errors import ValidationError
from core.models.billing import BatchUpdateReport, ReconciliationReport
from core.observability.logging import (
    log_activity_complete,
    log_activity_error,
    log_activity_start,
    with_correlation,
)
from core.observability.metrics import (
    record_activity_completed,
    record_activity_failed,
    record_activity_started,
)
from reconciliation.engine import PendingPaymentFilter, ReconciliationEngine
from storage.db import LedgerStore


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class MarkOverdueInput:
    """Input for mark_overdue activity.

    Attributes:
        as_of: ISO date to compare due dates against (default: today, UTC)
        company_id: Restrict to one company
        db_path: Ledger database (default: configured BILLING_DB_PATH)
    """
    as_of: Optional[str] = None
    company_id: Optional[str] = None
    db_path: Optional[str] = None


@dataclass
class ReconcilePendingInput:
    """Input for reconcile_pending_payments activity.

    Selects explicit references, or with include_all every referenced
    pending payment of one tenant or company.
    """
    company_id: Optional[str] = None
    tenant_id: Optional[str] = None
    references: List[str] = field(default_factory=list)
    include_all: bool = False
    db_path: Optional[str] = None


@dataclass
class SyncReferencesInput:
    """Input for sync_payment_references activity."""
    company_id: Optional[str] = None
    db_path: Optional[str] = None


@dataclass
class MaintenanceOutput:
    """Output from a maintenance activity.

    Attributes:
        updated_ids: Records changed by the pass
        failures: Per-item failures ({item_id, error, message})
        cancelled_ids: Placeholders cancelled (reconciliation only)
    """
    updated_ids: List[str]
    failures: List[dict]
    cancelled_ids: List[str] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return len(self.updated_ids)


# =============================================================================
# Helpers
# =============================================================================

def _engine(db_path: Optional[str]) -> ReconciliationEngine:
    store = LedgerStore(Path(db_path)) if db_path else LedgerStore()
    store.init_db()
    return ReconciliationEngine(store)


def _from_batch(report: BatchUpdateReport) -> MaintenanceOutput:
    return MaintenanceOutput(
        updated_ids=list(report.updated_ids),
        failures=[f.model_dump() for f in report.failures],
    )


def _from_reconciliation(report: ReconciliationReport) -> MaintenanceOutput:
    return MaintenanceOutput(
        updated_ids=list(report.updated_ids),
        failures=[f.model_dump() for f in report.failures],
        cancelled_ids=list(report.cancelled_ids),
    )


def _run(activity_name: str, operation) -> MaintenanceOutput:
    started = time.monotonic()
    record_activity_started(activity_name)
    log_activity_start(activity_name)
    try:
        output = operation()
    except Exception as e:
        record_activity_failed(activity_name, str(e))
        log_activity_error(activity_name, str(e))
        raise
    duration_ms = (time.monotonic() - started) * 1000
    record_activity_completed(activity_name, duration_ms)
    log_activity_complete(
        activity_name,
        duration_ms=duration_ms,
        updated=output.updated_count,
        failures=len(output.failures),
    )
    return output


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def mark_overdue(input: MarkOverdueInput) -> MaintenanceOutput:
    """Mark sent invoices whose due date has passed as overdue."""
    activity.logger.info(f"Marking overdue invoices (as_of={input.as_of or 'today'})")
    as_of = date.fromisoformat(input.as_of) if input.as_of else None

    with with_correlation(activity_name="mark_overdue", company_id=input.company_id):
        return _run(
            "mark_overdue",
            lambda: _from_batch(_engine(input.db_path).mark_overdue_invoices(as_of=as_of, company_id=input.company_id)),
        )


@activity.defn
async def reconcile_pending_payments(input: ReconcilePendingInput) -> MaintenanceOutput:
    """Promote or cancel pending payments with references."""
    activity.logger.info(
        f"Reconciling pending payments (tenant={input.tenant_id or '*'}, refs={len(input.references)})"
    )
    if input.include_all and not (input.tenant_id or input.company_id):
        raise ValidationError("include_all needs a tenant_id or company_id")
    payment_filter = PendingPaymentFilter(
        company_id=input.company_id,
        tenant_id=input.tenant_id,
        references=input.references,
        include_all=input.include_all,
    )

    with with_correlation(activity_name="reconcile_pending_payments", company_id=input.company_id):
        return _run(
            "reconcile_pending_payments",
            lambda: _from_reconciliation(_engine(input.db_path).reconcile_pending(payment_filter)),
        )


@activity.defn
async def sync_payment_references(input: SyncReferencesInput) -> MaintenanceOutput:
    """Point invoice payment_reference at the latest payment receipt."""
    activity.logger.info("Syncing invoice payment references")

    with with_correlation(activity_name="sync_payment_references", company_id=input.company_id):
        return _run(
            "sync_payment_references",
            lambda: _from_batch(_engine(input.db_path).sync_invoice_payment_references(input.company_id)),
        )
