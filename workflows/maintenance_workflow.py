"""Billing Maintenance Workflow.

Runs the periodic consistency passes in order:
1. Mark overdue invoices
2. Reconcile pending payments, only when the run names references or
   opts into reconcile_all for a tenant or company
3. Sync invoice payment references

Each step is its own activity with its own retry policy. Per-item failures
are part of the activity result, not activity errors.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.maintenance import (
        mark_overdue,
        reconcile_pending_payments,
        sync_payment_references,
        MarkOverdueInput,
        ReconcilePendingInput,
        SyncReferencesInput,
    )


MAINTENANCE_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=5),
    backoff_coefficient=2.0,
    maximum_interval=timedelta(minutes=2),
    maximum_attempts=5,
    # Matched by exact class name; these never succeed on retry
    non_retryable_error_types=["ValidationError", "IllegalTransitionError", "InconsistentStateError"],
)


@dataclass
class MaintenanceInput:
    """Input for Billing Maintenance Workflow.

    Attributes:
        company_id: Restrict every pass to one company (default: all)
        as_of: ISO date for the overdue comparison (default: today)
        db_path: Ledger database (default: configured BILLING_DB_PATH)
        reconcile_tenant_id: Tenant whose pending payments may be reconciled
        reconcile_references: Pending payment references confirmed by the operator
        reconcile_all: Reconcile every referenced pending payment of the
            tenant or company (needs one of them)
    """
    company_id: Optional[str] = None
    as_of: Optional[str] = None
    db_path: Optional[str] = None
    reconcile_tenant_id: Optional[str] = None
    reconcile_references: List[str] = field(default_factory=list)
    reconcile_all: bool = False


def reconcile_step_input(input: MaintenanceInput) -> Optional[ReconcilePendingInput]:
    """The reconcile pass input, or None when the run did not ask for one."""
    if not input.reconcile_references and not input.reconcile_all:
        return None
    return ReconcilePendingInput(
        company_id=input.company_id,
        tenant_id=input.reconcile_tenant_id,
        references=list(input.reconcile_references),
        include_all=input.reconcile_all,
        db_path=input.db_path,
    )


@workflow.defn
class BillingMaintenanceWorkflow:
    """Workflow for the scheduled billing consistency passes."""

    @workflow.run
    async def run(self, input: MaintenanceInput) -> dict:
        """Execute the maintenance passes.

        Returns:
            dict with updated/failed counts per pass
        """
        workflow.logger.info(f"Starting billing maintenance (company={input.company_id or '*'})")

        overdue = await workflow.execute_activity(
            mark_overdue,
            MarkOverdueInput(as_of=input.as_of, company_id=input.company_id, db_path=input.db_path),
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=MAINTENANCE_RETRY_POLICY,
        )

        result = {"overdue": {"updated": len(overdue.updated_ids), "failed": len(overdue.failures)}}

        reconcile_input = reconcile_step_input(input)
        if reconcile_input is None:
            workflow.logger.info("No pending payments selected; skipping reconciliation")
        else:
            reconciled = await workflow.execute_activity(
                reconcile_pending_payments,
                reconcile_input,
                start_to_close_timeout=timedelta(minutes=10),
                retry_policy=MAINTENANCE_RETRY_POLICY,
            )
            result["reconciled"] = {
                "updated": len(reconciled.updated_ids),
                "cancelled": len(reconciled.cancelled_ids),
                "failed": len(reconciled.failures),
            }

        synced = await workflow.execute_activity(
            sync_payment_references,
            SyncReferencesInput(company_id=input.company_id, db_path=input.db_path),
            start_to_close_timeout=timedelta(minutes=10),
            retry_policy=MAINTENANCE_RETRY_POLICY,
        )
        result["references"] = {"updated": len(synced.updated_ids), "failed": len(synced.failures)}

        workflow.logger.info(f"Billing maintenance complete: {result}")
        return result
