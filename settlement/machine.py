"""Settlement state machine.

Applies invoice and payment status changes inside an open store session:
- checks each change against the transition tables in settlement.states
- runs side effects (receipt allocation, invoice aggregate recompute)
- diffs the old and new record and appends an audit event

An invoice is `paid` exactly when its approved/completed payments cover
its total. That status is only ever written by recompute_invoice_status;
transition_invoice refuses to set or leave it.
"""

from datetime import date, datetime
from typing import Optional

from core.audit.events import AuditEventType, AuditLogger, diff_changes
from core.errors import IllegalTransitionError, InconsistentStateError, NotFoundError
from core.models.billing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    SETTLED_PAYMENT_STATUSES,
)
from core.observability.logging import get_logger, with_correlation
from core.observability.metrics import get_metrics
from numbering.allocator import SequenceAllocator
from numbering.models import DocumentKind, TenantScope
from numbering.scope import resolve_scope
from settlement.placeholders import is_placeholder
from settlement.states import (
    RECOMPUTE_ONLY_INVOICE_SOURCES,
    RECOMPUTE_ONLY_INVOICE_TARGETS,
    check_invoice_transition,
    check_payment_transition,
)
from storage.db import to_naive_utc, utcnow


logger = get_logger(__name__)

REVERSAL_STATUSES = (PaymentStatus.REFUNDED, PaymentStatus.REVERSED)


def append_note(notes: Optional[str], note: str) -> str:
    return f"{notes} - {note}" if notes else note


class SettlementStateMachine:
    """Owns every status change of invoices and payments.

    Args:
        allocator: Used to mint receipt numbers on settlement
        audit: Audit logger the transition records go to
    """

    def __init__(self, allocator: SequenceAllocator, audit: AuditLogger):
        self.allocator = allocator
        self.audit = audit

    # =========================================================================
    # Audit
    # =========================================================================

    def record_change(
        self,
        session,
        event_type: AuditEventType,
        entity_type: str,
        old,
        new,
        message: str,
        actor: str = "system",
        details: Optional[dict] = None,
    ) -> None:
        """Diff old/new and append an audit event in the caller's transaction."""
        self.audit.log_info(
            event_type,
            message,
            session=session,
            company_id=new.company_id,
            entity_type=entity_type,
            entity_id=new.id,
            document_number=getattr(new, "number", None) or getattr(new, "receipt_number", None),
            changes=diff_changes(old, new),
            details=details,
            actor=actor,
        )

    # =========================================================================
    # Invoices
    # =========================================================================

    def _apply_invoice_status(
        self,
        session,
        invoice: Invoice,
        target: InvoiceStatus,
        actor: str,
        reason: str,
        **fields,
    ) -> Invoice:
        check_invoice_transition(invoice.status, target)
        updated = invoice.model_copy(update={"status": target, "updated_at": utcnow(), **fields})
        session.update_invoice(updated)
        self.record_change(
            session,
            AuditEventType.INVOICE_TRANSITION,
            "invoice",
            invoice,
            updated,
            f"Invoice {invoice.number} {invoice.status.value} -> {target.value} ({reason})",
            actor=actor,
        )
        logger.info(
            f"Invoice {invoice.number}: {invoice.status.value} -> {target.value}",
            extra_fields={"invoice_id": invoice.id, "reason": reason},
        )
        return updated

    def transition_invoice(
        self,
        session,
        invoice: Invoice,
        target: InvoiceStatus,
        actor: str = "system",
        reason: str = "manual",
    ) -> Invoice:
        """Generic status change (send, cancel, mark overdue).

        Raises:
            IllegalTransitionError: Not in the transition table, or the change
                sets or leaves `paid`
        """
        target = InvoiceStatus(target)
        if target in RECOMPUTE_ONLY_INVOICE_TARGETS:
            raise IllegalTransitionError(
                "Invoices become paid only when settled payments cover the total",
                {"from": invoice.status.value, "to": target.value},
            )
        if invoice.status in RECOMPUTE_ONLY_INVOICE_SOURCES:
            raise IllegalTransitionError(
                "A paid invoice is reopened only by a refund or reversal",
                {"from": invoice.status.value, "to": target.value},
            )
        return self._apply_invoice_status(session, invoice, target, actor, reason)

    def recompute_invoice_status(
        self,
        session,
        invoice_id: str,
        trigger: Optional[Payment] = None,
        actor: str = "system",
        as_of: Optional[date] = None,
    ) -> Invoice:
        """Bring an invoice's status in line with its settled payments.

        Flips to `paid` (writing paid_date, payment_method and
        payment_reference from the triggering payment) when covered, and
        reopens a `paid` invoice that is no longer covered. Draft invoices
        are sent first. Cancelled invoices are left alone.

        Raises:
            NotFoundError: Invoice does not exist
            InconsistentStateError: A settled payment belongs to another
                company or is in another currency
        """
        invoice = session.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice not found: {invoice_id}")

        with with_correlation(company_id=invoice.company_id, invoice_id=invoice.id):
            payments = session.list_payments(invoice.id)
            settled = [p for p in payments if p.status in SETTLED_PAYMENT_STATUSES]
            for payment in settled:
                if payment.company_id != invoice.company_id:
                    raise InconsistentStateError(
                        f"Payment {payment.id} belongs to company {payment.company_id}, "
                        f"invoice {invoice.number} to {invoice.company_id}",
                        {"payment_id": payment.id, "invoice_id": invoice.id},
                    )
                if payment.currency != invoice.currency:
                    raise InconsistentStateError(
                        f"Payment {payment.id} is in {payment.currency}, "
                        f"invoice {invoice.number} in {invoice.currency}",
                        {"payment_id": payment.id, "invoice_id": invoice.id},
                    )

            if invoice.status == InvoiceStatus.CANCELLED:
                if settled:
                    logger.warning(f"Settled payments recorded against cancelled invoice {invoice.number}")
                return invoice

            paid_total = session.settled_total(invoice.id)
            covered = paid_total >= invoice.total_amount

            if covered and invoice.status != InvoiceStatus.PAID:
                if invoice.status == InvoiceStatus.DRAFT:
                    invoice = self._apply_invoice_status(session, invoice, InvoiceStatus.SENT, actor, "settlement")
                source = trigger if trigger is not None and trigger.status in SETTLED_PAYMENT_STATUSES else None
                if source is None and settled:
                    source = settled[0]
                invoice = self._apply_invoice_status(
                    session,
                    invoice,
                    InvoiceStatus.PAID,
                    actor,
                    f"settled {paid_total} of {invoice.total_amount}",
                    paid_date=(source.payment_date if source else None) or utcnow(),
                    payment_method=source.payment_method if source else invoice.payment_method,
                    payment_reference=source.receipt_number if source else invoice.payment_reference,
                )
                get_metrics().record_invoice_settled()

            elif not covered and invoice.status == InvoiceStatus.PAID:
                today = as_of or utcnow().date()
                target = (
                    InvoiceStatus.OVERDUE
                    if invoice.due_date is not None and invoice.due_date < today
                    else InvoiceStatus.SENT
                )
                invoice = self._apply_invoice_status(
                    session,
                    invoice,
                    target,
                    actor,
                    f"coverage dropped to {paid_total} of {invoice.total_amount}",
                    paid_date=None,
                )

            elif not covered and paid_total > 0:
                logger.debug(
                    f"Invoice {invoice.number} partially settled: {paid_total} of {invoice.total_amount}",
                )

            return invoice

    # =========================================================================
    # Payments
    # =========================================================================

    def assign_receipt_number(self, session, payment: Payment, on: Optional[datetime] = None) -> str:
        """Keep a real receipt number, or allocate an RCT number over a placeholder."""
        if not is_placeholder(payment.receipt_number):
            return payment.receipt_number
        scope = resolve_scope(
            TenantScope(company_id=payment.company_id),
            DocumentKind.RECEIPT,
            to_naive_utc(on or payment.payment_date or utcnow()),
        )
        return self.allocator.allocate(session, scope)

    def transition_payment(
        self,
        session,
        payment: Payment,
        target: PaymentStatus,
        actor: str = "system",
        note: Optional[str] = None,
        **fields,
    ) -> Payment:
        """Move a payment to a new status and run the side effects.

        pending -> approved/completed allocates a receipt number over a
        placeholder, stamps processed_at and recomputes the invoice.
        approved/completed -> refunded/reversed recomputes the invoice.

        Raises:
            IllegalTransitionError: Not in the transition table
        """
        target = PaymentStatus(target)
        check_payment_transition(payment.status, target)

        now = utcnow()
        update = {"status": target, "updated_at": now, **fields}
        if note:
            update["notes"] = append_note(payment.notes, note)

        settling = payment.status == PaymentStatus.PENDING and target in SETTLED_PAYMENT_STATUSES
        if settling:
            payment_date = to_naive_utc(update.get("payment_date") or payment.payment_date or now)
            update["payment_date"] = payment_date
            update["processed_at"] = now
            update["receipt_number"] = self.assign_receipt_number(session, payment, payment_date)

        updated = payment.model_copy(update=update)
        session.update_payment(updated)
        self.record_change(
            session,
            AuditEventType.PAYMENT_TRANSITION,
            "payment",
            payment,
            updated,
            f"Payment {payment.id} {payment.status.value} -> {target.value}",
            actor=actor,
        )
        logger.info(
            f"Payment {payment.id}: {payment.status.value} -> {target.value}",
            extra_fields={"payment_id": payment.id, "receipt_number": updated.receipt_number},
        )

        if updated.invoice_id and (settling or target in REVERSAL_STATUSES):
            self.recompute_invoice_status(session, updated.invoice_id, trigger=updated, actor=actor)

        return updated
