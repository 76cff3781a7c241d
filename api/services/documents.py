"""
Document Service for the billing API.

Creates and updates numbered documents. Every operation runs in one
store transaction: the number is allocated, the record inserted and the
audit row appended together, or not at all.
"""

import uuid
from datetime import date
from typing import Any, Dict, Optional

from core.audit.events import AuditEventType
from core.config import get_settings
from core.errors import NotFoundError, ValidationError
from core.models.billing import (
    Invoice,
    InvoiceStatus,
    Lease,
    LeaseStatus,
    Payment,
    PaymentStatus,
    Property,
)
from core.observability.logging import get_logger, with_correlation
from numbering.models import DocumentKind, TenantScope
from numbering.scope import derive_property_code, resolve_scope
from reconciliation.engine import ReconciliationEngine, to_decimal
from settlement.placeholders import new_placeholder
from storage.db import utcnow


logger = get_logger(__name__)

CREATABLE_INVOICE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.SENT)

# Lease fields a PATCH may change; number and company are fixed
MUTABLE_LEASE_FIELDS = ("tenant_id", "property_id", "start_date", "end_date", "rent_amount", "status")


def _positive_amount(value, field_name: str):
    amount = to_decimal(value)
    if amount is None or amount <= 0:
        raise ValidationError(f"{field_name} must be a positive number, got {value!r}")
    return amount


class DocumentService:
    """Numbered document creation on top of the engine's machine and store."""

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine
        self.store = engine.store
        self.machine = engine.machine
        self.allocator = engine.machine.allocator

    def _get_property(self, session, tenant: TenantScope, property_id: Optional[str]) -> Optional[Property]:
        if not property_id:
            return None
        prop = session.get_property(property_id)
        if prop is None or prop.company_id != tenant.company_id:
            raise NotFoundError(f"Property not found: {property_id}")
        return prop

    # =========================================================================
    # Properties
    # =========================================================================

    def register_property(self, tenant: TenantScope, name: str) -> Property:
        if not name or not name.strip():
            raise ValidationError("Property name is required")
        now = utcnow()
        prop = Property(id=str(uuid.uuid4()), company_id=tenant.company_id, name=name.strip(), created_at=now, updated_at=now)
        with self.store.transaction() as session:
            session.insert_property(prop)
        logger.info(
            f"Registered property {prop.name} (code {derive_property_code(prop.name) or '-'})",
            extra_fields={"company_id": tenant.company_id},
        )
        return prop

    # =========================================================================
    # Invoices
    # =========================================================================

    def create_invoice(
        self,
        tenant: TenantScope,
        total_amount,
        issue_date: date,
        property_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        due_date: Optional[date] = None,
        currency: Optional[str] = None,
        status: InvoiceStatus = InvoiceStatus.SENT,
    ) -> Invoice:
        """Create an invoice numbered in its (company, issue month, property) scope.

        Raises:
            ValidationError: Bad amount, dates or initial status
            NotFoundError: Property is unknown to the company
            CollisionExhausted: No unique number could be allocated
        """
        amount = _positive_amount(total_amount, "total_amount")
        status = InvoiceStatus(status)
        if status not in CREATABLE_INVOICE_STATUSES:
            raise ValidationError(f"Invoices are created as draft or sent, not {status.value}")
        if due_date is not None and due_date < issue_date:
            raise ValidationError("due_date is before issue_date")

        with with_correlation(company_id=tenant.company_id):
            with self.store.transaction() as session:
                prop = self._get_property(session, tenant, property_id)
                scope = resolve_scope(
                    tenant,
                    DocumentKind.INVOICE,
                    issue_date,
                    property_name=prop.name if prop else None,
                )
                now = utcnow()
                invoice = Invoice(
                    id=str(uuid.uuid4()),
                    company_id=tenant.company_id,
                    property_id=property_id,
                    tenant_id=tenant_id,
                    number=self.allocator.allocate(session, scope),
                    status=status,
                    total_amount=amount,
                    currency=currency or get_settings().default_currency,
                    issue_date=issue_date,
                    due_date=due_date,
                    created_at=now,
                    updated_at=now,
                )
                session.insert_invoice(invoice)
                self.machine.record_change(
                    session,
                    AuditEventType.INVOICE_CREATED,
                    "invoice",
                    None,
                    invoice,
                    f"Invoice {invoice.number} created",
                    actor=tenant.actor,
                )

            logger.info(f"Created invoice {invoice.number}", extra_fields={"invoice_id": invoice.id})
            return invoice

    def change_invoice_status(self, tenant: TenantScope, invoice_id: str, status: InvoiceStatus) -> Invoice:
        """Generic status update (send, cancel). `paid` is refused here."""
        with self.store.transaction() as session:
            invoice = session.get_invoice(invoice_id)
            if invoice is None or invoice.company_id != tenant.company_id:
                raise NotFoundError(f"Invoice not found: {invoice_id}")
            return self.machine.transition_invoice(session, invoice, status, actor=tenant.actor)

    def get_invoice(self, tenant: TenantScope, invoice_id: str) -> Invoice:
        with self.store.transaction() as session:
            invoice = session.get_invoice(invoice_id)
        if invoice is None or invoice.company_id != tenant.company_id:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        return invoice

    # =========================================================================
    # Leases
    # =========================================================================

    def create_lease(
        self,
        tenant: TenantScope,
        start_date: date,
        property_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        end_date: Optional[date] = None,
        rent_amount=None,
        status: LeaseStatus = LeaseStatus.ACTIVE,
    ) -> Lease:
        """Create a lease numbered in its (company, start month, property) scope."""
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date is before start_date")
        rent = _positive_amount(rent_amount, "rent_amount") if rent_amount is not None else None

        with with_correlation(company_id=tenant.company_id):
            with self.store.transaction() as session:
                prop = self._get_property(session, tenant, property_id)
                scope = resolve_scope(
                    tenant,
                    DocumentKind.LEASE,
                    start_date,
                    property_name=prop.name if prop else None,
                )
                now = utcnow()
                lease = Lease(
                    id=str(uuid.uuid4()),
                    company_id=tenant.company_id,
                    property_id=property_id,
                    tenant_id=tenant_id,
                    number=self.allocator.allocate(session, scope),
                    start_date=start_date,
                    end_date=end_date,
                    rent_amount=rent,
                    status=LeaseStatus(status),
                    created_at=now,
                    updated_at=now,
                )
                session.insert_lease(lease)
                self.machine.record_change(
                    session,
                    AuditEventType.LEASE_CREATED,
                    "lease",
                    None,
                    lease,
                    f"Lease {lease.number} created",
                    actor=tenant.actor,
                )

            logger.info(f"Created lease {lease.number}", extra_fields={"lease_id": lease.id})
            return lease

    def update_lease(self, tenant: TenantScope, lease_id: str, changes: Dict[str, Any]) -> Lease:
        """Apply a partial update and record the field diff in the audit trail.

        The lease keeps its number even when start_date moves.
        """
        unknown = set(changes) - set(MUTABLE_LEASE_FIELDS)
        if unknown:
            raise ValidationError(f"Lease fields cannot be changed: {sorted(unknown)}")

        with with_correlation(company_id=tenant.company_id, lease_id=lease_id):
            with self.store.transaction() as session:
                lease = session.get_lease(lease_id)
                if lease is None or lease.company_id != tenant.company_id:
                    raise NotFoundError(f"Lease not found: {lease_id}")
                if changes.get("property_id"):
                    self._get_property(session, tenant, changes["property_id"])

                data = lease.model_dump()
                data.update(changes)
                data["updated_at"] = utcnow()
                updated = Lease.model_validate(data)
                if updated.end_date is not None and updated.end_date < updated.start_date:
                    raise ValidationError("end_date is before start_date")
                if updated == lease.model_copy(update={"updated_at": data["updated_at"]}):
                    return lease

                session.update_lease(updated)
                self.machine.record_change(
                    session,
                    AuditEventType.LEASE_MODIFIED,
                    "lease",
                    lease,
                    updated,
                    f"Lease {lease.number} modified",
                    actor=tenant.actor,
                )
                return updated

    # =========================================================================
    # Payment intents
    # =========================================================================

    def create_payment_intent(
        self,
        tenant: TenantScope,
        invoice_id: str,
        amount=None,
        payment_method: Optional[str] = None,
    ) -> Payment:
        """Record an expected payment before the provider has reported it.

        The payment is pending, carries a placeholder receipt number and
        internally generated PAY- and TXN- references. Amount defaults to
        what is still outstanding on the invoice.
        """
        with with_correlation(company_id=tenant.company_id, invoice_id=invoice_id):
            with self.store.transaction() as session:
                invoice = session.get_invoice(invoice_id)
                if invoice is None or invoice.company_id != tenant.company_id:
                    raise NotFoundError(f"Invoice not found: {invoice_id}")
                if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
                    raise ValidationError(f"Invoice {invoice.number} is {invoice.status.value}")

                if amount is None:
                    value = invoice.total_amount - session.settled_total(invoice.id)
                    if value <= 0:
                        raise ValidationError(f"Nothing outstanding on invoice {invoice.number}")
                else:
                    value = _positive_amount(amount, "amount")

                now = utcnow()
                reference = self.allocator.allocate(
                    session, resolve_scope(tenant, DocumentKind.PAYMENT_REFERENCE, now)
                )
                transaction_id = self.allocator.allocate(
                    session, resolve_scope(tenant, DocumentKind.TRANSACTION_REFERENCE, now)
                )
                payment = Payment(
                    id=str(uuid.uuid4()),
                    company_id=tenant.company_id,
                    invoice_id=invoice.id,
                    tenant_id=invoice.tenant_id,
                    amount=value,
                    currency=invoice.currency,
                    status=PaymentStatus.PENDING,
                    receipt_number=new_placeholder(),
                    reference_number=reference,
                    transaction_id=transaction_id,
                    payment_method=payment_method,
                    created_at=now,
                    updated_at=now,
                )
                session.insert_payment(payment)
                self.machine.record_change(
                    session,
                    AuditEventType.PAYMENT_CREATED,
                    "payment",
                    None,
                    payment,
                    f"Payment intent {reference} created for invoice {invoice.number}",
                    actor=tenant.actor,
                )

            logger.info(f"Created payment intent {reference}", extra_fields={"payment_id": payment.id})
            return payment
