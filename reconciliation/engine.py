"""Reconciliation engine for tenant payments and invoices.

Exposes high-level operations:
- reconcile_pending(filter) -> ReconciliationReport
- ingest_external_event(reference, invoice_id, amount, occurred_at) -> Payment
- sync_invoice_payment_references(company_id) -> BatchUpdateReport
- mark_overdue_invoices(as_of) -> BatchUpdateReport
- reverse_payment(payment_id, refund, reason) -> Payment
- link_unmatched_payments(company_id) -> BatchUpdateReport

Batch operations run one store transaction per item and collect per-item
failures into their report; one bad payment or invoice never aborts the
rest of the batch. Single-item operations raise.
"""

import sqlite3
import time
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from core.audit.events import AuditEventType, AuditLogger, SQLiteAuditBackend
from core.errors import BillingError, InconsistentStateError, NotFoundError, ValidationError
from core.models.billing import (
    BatchUpdateReport,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    ReconciliationFailure,
    ReconciliationReport,
)
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from numbering.allocator import SequenceAllocator
from settlement.machine import SettlementStateMachine
from settlement.placeholders import is_placeholder
from storage.db import LedgerStore, to_naive_utc, utcnow


logger = get_logger(__name__)


# =============================================================================
# Configuration & Data Structures
# =============================================================================

CANCELLED_SUPERSEDED_NOTE = "Auto-cancelled (approved payment exists)"
RECONCILED_NOTE = "Auto-reconciled from pending"
INGESTED_NOTE = "Recorded from provider event"

DEFAULT_PAYMENT_METHOD = "online"

UNPAID_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE)


class PendingPaymentFilter(BaseModel):
    """Selects pending payments for reconcile_pending.

    At least one of `references` / `include_all` must be given.
    """
    company_id: Optional[str] = Field(None, description="Restrict to one company")
    tenant_id: Optional[str] = Field(None, description="Restrict to one tenant")
    references: List[str] = Field(default_factory=list, description="reference_number or transaction_id values")
    include_all: bool = Field(False, description="Every pending payment with any reference present")

    def validate_selection(self) -> None:
        self.references = [r.strip() for r in self.references if r and r.strip()]
        if not self.references and not self.include_all:
            raise ValidationError("Provide references or set include_all")


# =============================================================================
# Utility Functions
# =============================================================================

def to_decimal(value) -> Optional[Decimal]:
    """Convert value to Decimal; None for anything that is not a finite number."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            return None
    return amount if amount.is_finite() else None


def _failure(item_id: str, error: Exception) -> ReconciliationFailure:
    if isinstance(error, BillingError):
        return ReconciliationFailure(item_id=item_id, error=error.code, message=error.message)
    if isinstance(error, sqlite3.DatabaseError):
        return ReconciliationFailure(item_id=item_id, error="database_error", message=str(error))
    return ReconciliationFailure(item_id=item_id, error="internal_error", message=f"{type(error).__name__}: {error}")


# Errors a batch records against the item and moves past
BATCH_ITEM_ERRORS = (BillingError, sqlite3.DatabaseError)


# =============================================================================
# Engine
# =============================================================================

class ReconciliationEngine:
    """Keeps payment and invoice state consistent.

    Usage:
        engine = ReconciliationEngine(LedgerStore(db_path))
        report = engine.reconcile_pending(PendingPaymentFilter(tenant_id="t-1", include_all=True))
    """

    def __init__(
        self,
        store: LedgerStore,
        machine: Optional[SettlementStateMachine] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        if audit is None:
            audit = AuditLogger()
            audit.add_backend(SQLiteAuditBackend(store))
        self.audit = audit
        self.machine = machine or SettlementStateMachine(SequenceAllocator(audit), audit)

    def _run_item(
        self,
        item_id: str,
        operation: Callable,
        failures: List[ReconciliationFailure],
    ):
        """Run one item in its own transaction; record a failure instead of raising."""
        try:
            with self.store.transaction() as session:
                return operation(session)
        except BATCH_ITEM_ERRORS as e:
            logger.warning(
                f"Skipping {item_id}: {e}",
                extra_fields={"item_id": item_id, "error": type(e).__name__},
            )
            failures.append(_failure(item_id, e))
            return None
        except Exception as e:
            logger.exception(
                f"Unexpected error on {item_id}: {e}",
                extra_fields={"item_id": item_id, "error": type(e).__name__},
            )
            failures.append(_failure(item_id, e))
            return None

    # =========================================================================
    # Pending payments
    # =========================================================================

    def reconcile_pending(
        self,
        payment_filter: PendingPaymentFilter,
        actor: str = "system",
    ) -> ReconciliationReport:
        """Promote or cancel pending payments matching the filter.

        For each payment, in creation order and in its own transaction:
        - no longer pending: skipped
        - other approved/completed payments already cover the invoice:
          cancelled with a note (never deleted)
        - otherwise: promoted to approved, receipt allocated over a
          placeholder, invoice recomputed
        """
        payment_filter.validate_selection()
        started = time.monotonic()
        report = ReconciliationReport()

        with self.store.transaction() as session:
            candidates = session.list_pending_payments(
                company_id=payment_filter.company_id,
                tenant_id=payment_filter.tenant_id,
                references=payment_filter.references,
                include_all=payment_filter.include_all,
            )

        logger.info(
            f"Reconciling {len(candidates)} pending payment(s)",
            extra_fields={"tenant_id": payment_filter.tenant_id, "include_all": payment_filter.include_all},
        )

        for candidate in candidates:
            with with_correlation(company_id=candidate.company_id, payment_id=candidate.id):
                self._run_item(
                    candidate.id,
                    lambda session, pid=candidate.id: self._reconcile_one(session, pid, report, actor),
                    report.failures,
                )

        metrics = get_metrics()
        metrics.record_reconciliation("reconciled", len(report.reconciled_ids))
        metrics.record_reconciliation("cancelled", len(report.cancelled_ids))
        metrics.record_reconciliation("skipped", len(report.skipped_ids))
        metrics.record_reconciliation("failed", len(report.failures))
        metrics.record_processing_time("reconcile_pending", (time.monotonic() - started) * 1000)

        logger.info(
            f"Reconciled {len(report.reconciled_ids)}, cancelled {len(report.cancelled_ids)}, "
            f"skipped {len(report.skipped_ids)}, failed {len(report.failures)}",
        )
        return report

    def _reconcile_one(self, session, payment_id: str, report: ReconciliationReport, actor: str) -> None:
        payment = session.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment not found: {payment_id}")
        if payment.status != PaymentStatus.PENDING:
            report.skipped_ids.append(payment.id)
            return

        if payment.invoice_id:
            invoice = session.get_invoice(payment.invoice_id)
            if invoice is None:
                raise NotFoundError(f"Invoice not found: {payment.invoice_id}")
            if invoice.company_id != payment.company_id:
                raise InconsistentStateError(
                    f"Payment {payment.id} and invoice {invoice.number} belong to different companies",
                    {"payment_id": payment.id, "invoice_id": invoice.id},
                )

            covered_by_others = session.settled_total(invoice.id, exclude_payment_id=payment.id)
            if covered_by_others >= invoice.total_amount:
                self.machine.transition_payment(
                    session,
                    payment,
                    PaymentStatus.CANCELLED,
                    actor=actor,
                    note=CANCELLED_SUPERSEDED_NOTE,
                )
                self.audit.log_info(
                    AuditEventType.PLACEHOLDER_CANCELLED,
                    f"Pending payment {payment.id} superseded on invoice {invoice.number}",
                    session=session,
                    company_id=payment.company_id,
                    entity_type="payment",
                    entity_id=payment.id,
                    details={"invoice_id": invoice.id, "covered_by": str(covered_by_others)},
                    actor=actor,
                )
                # Bookkeeping may lag behind the covering payments
                self.machine.recompute_invoice_status(session, invoice.id, actor=actor)
                report.cancelled_ids.append(payment.id)
                return

        self.machine.transition_payment(
            session,
            payment,
            PaymentStatus.APPROVED,
            actor=actor,
            note=RECONCILED_NOTE,
            payment_method=payment.payment_method or DEFAULT_PAYMENT_METHOD,
        )
        report.reconciled_ids.append(payment.id)

    # =========================================================================
    # Provider events
    # =========================================================================

    def ingest_external_event(
        self,
        provider_reference: str,
        invoice_id: str,
        amount,
        occurred_at: datetime,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
        actor: str = "system",
    ) -> Payment:
        """Record a provider-reported settlement exactly once.

        A payment already carrying the reference (as transaction_id or
        receipt_number) is returned as is after its invoice is recomputed;
        if it is still pending, the event settles it. Otherwise, in one
        transaction: pending placeholder payments of the invoice are
        deleted, an approved payment is created with the reference as
        transaction_id and reference_number plus a fresh receipt number,
        and the invoice is recomputed.

        Raises:
            ValidationError: Empty reference, non-positive amount, no timestamp
            NotFoundError: Invoice does not exist
            CollisionExhausted: No receipt number could be allocated
        """
        reference = (provider_reference or "").strip()
        if not reference:
            raise ValidationError("provider_reference is required")
        value = to_decimal(amount)
        if value is None or value <= 0:
            raise ValidationError(f"amount must be a positive number, got {amount!r}")
        if not isinstance(occurred_at, datetime):
            raise ValidationError(f"occurred_at must be a timestamp, got {occurred_at!r}")
        occurred_at = to_naive_utc(occurred_at)

        with with_correlation(invoice_id=invoice_id, provider_reference=reference):
            with self.store.transaction() as session:
                invoice = session.get_invoice(invoice_id)
                if invoice is None:
                    raise NotFoundError(f"Invoice not found: {invoice_id}")

                existing = session.find_payment_by_reference(invoice.company_id, reference)
                if existing is not None:
                    return self._replay_event(session, existing, occurred_at, payment_method, actor)

                for stale in session.list_payments(invoice.id):
                    if stale.status == PaymentStatus.PENDING and is_placeholder(stale.receipt_number):
                        session.delete_payment(stale.id)
                        self.audit.log_info(
                            AuditEventType.PLACEHOLDER_DELETED,
                            f"Deleted pending placeholder {stale.receipt_number} on invoice {invoice.number}",
                            session=session,
                            company_id=stale.company_id,
                            entity_type="payment",
                            entity_id=stale.id,
                            document_number=stale.receipt_number,
                            details={"amount": str(stale.amount), "superseded_by": reference},
                            actor=actor,
                        )

                now = utcnow()
                payment = Payment(
                    id=str(uuid.uuid4()),
                    company_id=invoice.company_id,
                    invoice_id=invoice.id,
                    tenant_id=invoice.tenant_id,
                    amount=value,
                    currency=invoice.currency,
                    status=PaymentStatus.APPROVED,
                    reference_number=reference,
                    transaction_id=reference,
                    payment_method=payment_method,
                    payment_date=occurred_at,
                    processed_at=now,
                    notes=INGESTED_NOTE,
                    created_at=now,
                    updated_at=now,
                )
                payment.receipt_number = self.machine.assign_receipt_number(session, payment, occurred_at)
                session.insert_payment(payment)
                self.machine.record_change(
                    session,
                    AuditEventType.PAYMENT_INGESTED,
                    "payment",
                    None,
                    payment,
                    f"Payment {payment.receipt_number} recorded for provider reference {reference}",
                    actor=actor,
                )

                invoice = self.machine.recompute_invoice_status(session, invoice.id, trigger=payment, actor=actor)
                if invoice.status != InvoiceStatus.PAID:
                    logger.warning(
                        f"Invoice {invoice.number} still {invoice.status.value} after provider payment "
                        f"{reference} ({value} of {invoice.total_amount})",
                    )

            get_metrics().record_ingestion(duplicate=False)
            logger.info(f"Ingested provider payment {reference} as {payment.receipt_number}")
            return payment

    def _replay_event(self, session, existing: Payment, occurred_at: datetime, payment_method: str, actor: str) -> Payment:
        get_metrics().record_ingestion(duplicate=True)
        if existing.status == PaymentStatus.PENDING:
            logger.info(f"Provider event confirms pending payment {existing.id}")
            return self.machine.transition_payment(
                session,
                existing,
                PaymentStatus.APPROVED,
                actor=actor,
                note=INGESTED_NOTE,
                payment_date=existing.payment_date or occurred_at,
                payment_method=existing.payment_method or payment_method,
            )

        logger.info(f"Duplicate provider event for payment {existing.id}; reconciling invoice only")
        if existing.invoice_id:
            self.machine.recompute_invoice_status(session, existing.invoice_id, trigger=existing, actor=actor)
        return existing

    # =========================================================================
    # Maintenance passes
    # =========================================================================

    def sync_invoice_payment_references(self, company_id: Optional[str] = None, actor: str = "system") -> BatchUpdateReport:
        """Point every invoice's payment_reference at its latest non-cancelled payment's receipt.

        Latest is by payment_date desc, then creation order desc.
        """
        report = BatchUpdateReport()
        with self.store.transaction() as session:
            invoice_ids = session.list_invoice_ids_with_payments(company_id)

        for invoice_id in invoice_ids:
            with with_correlation(invoice_id=invoice_id):
                self._run_item(
                    invoice_id,
                    lambda session, iid=invoice_id: self._sync_reference(session, iid, report, actor),
                    report.failures,
                )

        logger.info(f"Synced payment references on {report.updated_count} of {len(invoice_ids)} invoice(s)")
        return report

    def _sync_reference(self, session, invoice_id: str, report: BatchUpdateReport, actor: str) -> None:
        invoice = session.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        latest = next(
            (p for p in session.list_payments(invoice.id) if p.status != PaymentStatus.CANCELLED),
            None,
        )
        if latest is None or not latest.receipt_number:
            return
        if invoice.payment_reference == latest.receipt_number:
            return

        updated = invoice.model_copy(update={"payment_reference": latest.receipt_number, "updated_at": utcnow()})
        session.update_invoice(updated)
        self.machine.record_change(
            session,
            AuditEventType.INVOICE_UPDATED,
            "invoice",
            invoice,
            updated,
            f"Invoice {invoice.number} payment reference -> {latest.receipt_number}",
            actor=actor,
        )
        report.updated_ids.append(invoice.id)

    def mark_overdue_invoices(
        self,
        as_of: Optional[date] = None,
        company_id: Optional[str] = None,
        actor: str = "system",
    ) -> BatchUpdateReport:
        """Move `sent` invoices whose due date has passed to `overdue`."""
        as_of = as_of or utcnow().date()
        report = BatchUpdateReport()
        with self.store.transaction() as session:
            candidates = session.list_invoices(company_id=company_id, statuses=[InvoiceStatus.SENT], due_before=as_of)

        for candidate in candidates:
            with with_correlation(company_id=candidate.company_id, invoice_id=candidate.id):
                self._run_item(
                    candidate.id,
                    lambda session, iid=candidate.id: self._mark_overdue(session, iid, as_of, report, actor),
                    report.failures,
                )

        logger.info(f"Marked {report.updated_count} invoice(s) overdue as of {as_of.isoformat()}")
        return report

    def _mark_overdue(self, session, invoice_id: str, as_of: date, report: BatchUpdateReport, actor: str) -> None:
        invoice = session.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        if invoice.status != InvoiceStatus.SENT or invoice.due_date is None or invoice.due_date >= as_of:
            return
        self.machine.transition_invoice(session, invoice, InvoiceStatus.OVERDUE, actor=actor, reason="past due")
        report.updated_ids.append(invoice.id)

    def reverse_payment(
        self,
        payment_id: str,
        refund: bool = False,
        reason: Optional[str] = None,
        actor: str = "system",
    ) -> Payment:
        """Refund or reverse a settled payment and reopen its invoice if coverage drops.

        Raises:
            NotFoundError: Payment does not exist
            IllegalTransitionError: Payment is not approved/completed
        """
        target = PaymentStatus.REFUNDED if refund else PaymentStatus.REVERSED
        with with_correlation(payment_id=payment_id):
            with self.store.transaction() as session:
                payment = session.get_payment(payment_id)
                if payment is None:
                    raise NotFoundError(f"Payment not found: {payment_id}")
                note = f"{target.value.capitalize()}: {reason}" if reason else target.value.capitalize()
                return self.machine.transition_payment(session, payment, target, actor=actor, note=note)

    def link_unmatched_payments(self, company_id: str, actor: str = "system") -> BatchUpdateReport:
        """Attach approved/completed payments with no invoice to the tenant's oldest
        unpaid invoice of exactly the same amount, then recompute that invoice.
        """
        report = BatchUpdateReport()
        with self.store.transaction() as session:
            unlinked = session.list_unlinked_settled_payments(company_id)

        for payment in unlinked:
            with with_correlation(company_id=company_id, payment_id=payment.id):
                self._run_item(
                    payment.id,
                    lambda session, pid=payment.id: self._link_payment(session, pid, report, actor),
                    report.failures,
                )

        logger.info(f"Linked {report.updated_count} of {len(unlinked)} unmatched payment(s)")
        return report

    def _link_payment(self, session, payment_id: str, report: BatchUpdateReport, actor: str) -> None:
        payment = session.get_payment(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment not found: {payment_id}")
        if payment.invoice_id or not payment.is_settled or not payment.tenant_id:
            return

        match = next(
            (
                inv for inv in session.list_invoices(company_id=payment.company_id, statuses=UNPAID_INVOICE_STATUSES)
                if inv.tenant_id == payment.tenant_id
                and inv.total_amount == payment.amount
                and inv.currency == payment.currency
            ),
            None,
        )
        if match is None:
            return

        updated = payment.model_copy(update={"invoice_id": match.id, "updated_at": utcnow()})
        session.update_payment(updated)
        self.machine.record_change(
            session,
            AuditEventType.PAYMENT_UPDATED,
            "payment",
            payment,
            updated,
            f"Payment {payment.receipt_number or payment.id} linked to invoice {match.number}",
            actor=actor,
        )
        self.machine.recompute_invoice_status(session, match.id, trigger=updated, actor=actor)
        report.updated_ids.append(match.id)
