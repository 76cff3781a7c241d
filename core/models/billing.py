"""Billing records persisted by the ledger store.

These models mirror the rows of the invoices, payments, leases and
properties tables. Amounts are Decimals; they are stored as TEXT so that
aggregates are computed without float rounding.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


# =============================================================================
# Value Parsers
# =============================================================================

def _parse_money(value):
    """Parse a money amount from str/int/float/Decimal."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip().replace(",", "")
        if s == "":
            return None
        try:
            return Decimal(s)
        except InvalidOperation:
            return value
    return value


Money = Annotated[Decimal, BeforeValidator(_parse_money)]


# =============================================================================
# Status Enums
# =============================================================================

class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    REVERSED = "reversed"
    CANCELLED = "cancelled"


SETTLED_PAYMENT_STATUSES = (PaymentStatus.APPROVED, PaymentStatus.COMPLETED)


class LeaseStatus(str, Enum):
    """Lease lifecycle states (not governed by the settlement machine)."""
    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    RENEWED = "renewed"


# =============================================================================
# Records
# =============================================================================

class BillingRecord(BaseModel):
    """Base for persisted rows."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Property(BillingRecord):
    """A managed property. Its name drives the short numbering code."""
    name: str


class Invoice(BillingRecord):
    """A billed amount owed by a tenant.

    Attributes:
        number: Formatted invoice number, unique per company
        status: Lifecycle state; `paid` is only set by settlement recompute
        total_amount: Amount that must be covered by settled payments
        payment_reference: Receipt of the most recent settling payment
    """
    property_id: Optional[str] = None
    tenant_id: Optional[str] = None
    number: str
    status: InvoiceStatus = InvoiceStatus.SENT
    total_amount: Money
    currency: str = "KES"
    issue_date: date
    due_date: Optional[date] = None
    paid_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None


class Payment(BillingRecord):
    """Money received, or expected, against an invoice.

    `receipt_number`, `reference_number` and `transaction_id` may hold
    internal placeholders until a real identifier is known.
    """
    invoice_id: Optional[str] = None
    tenant_id: Optional[str] = None
    amount: Money
    currency: str = "KES"
    status: PaymentStatus = PaymentStatus.PENDING
    receipt_number: Optional[str] = None
    reference_number: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_PAYMENT_STATUSES


class Lease(BillingRecord):
    """A tenancy agreement, numbered like invoices but scoped by start date."""
    property_id: Optional[str] = None
    tenant_id: Optional[str] = None
    number: str
    start_date: date
    end_date: Optional[date] = None
    rent_amount: Optional[Money] = None
    status: LeaseStatus = LeaseStatus.ACTIVE


class ReconciliationFailure(BaseModel):
    """One item that a batch operation could not process."""
    item_id: str = Field(..., description="Payment or invoice id")
    error: str = Field(..., description="Error code (e.g. not_found, inconsistent_state)")
    message: str = Field(..., description="Human-readable reason")


class ReconciliationReport(BaseModel):
    """Outcome of a batch reconciliation pass.

    Failures are collected per item; a batch never aborts because one
    payment or invoice is bad.
    """
    reconciled_ids: list[str] = Field(default_factory=list, description="Payments promoted to approved")
    cancelled_ids: list[str] = Field(default_factory=list, description="Superseded placeholders cancelled")
    skipped_ids: list[str] = Field(default_factory=list, description="No longer pending when reached")
    failures: list[ReconciliationFailure] = Field(default_factory=list)

    @property
    def updated_ids(self) -> list[str]:
        return self.reconciled_ids + self.cancelled_ids

    @property
    def reconciled_count(self) -> int:
        return len(self.updated_ids)


class BatchUpdateReport(BaseModel):
    """Outcome of a maintenance pass over invoices."""
    updated_ids: list[str] = Field(default_factory=list)
    failures: list[ReconciliationFailure] = Field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return len(self.updated_ids)
