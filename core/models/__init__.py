"""Core data models.

Billing records (invoices, payments, leases, properties) and the audit
models that record changes to them.
"""

from core.models.billing import (
    # Enums
    InvoiceStatus,
    PaymentStatus,
    LeaseStatus,
    SETTLED_PAYMENT_STATUSES,

    # Records
    Money,
    Property,
    Invoice,
    Payment,
    Lease,

    # Reports
    ReconciliationFailure,
    ReconciliationReport,
    BatchUpdateReport,
)

from core.models.refs import (
    AuditEvent,
    AuditSeverity,
    FieldChange,
)

__all__ = [
    # Enums
    "InvoiceStatus",
    "PaymentStatus",
    "LeaseStatus",
    "SETTLED_PAYMENT_STATUSES",

    # Records
    "Money",
    "Property",
    "Invoice",
    "Payment",
    "Lease",

    # Reports
    "ReconciliationFailure",
    "ReconciliationReport",
    "BatchUpdateReport",

    # Audit
    "AuditEvent",
    "AuditSeverity",
    "FieldChange",
]
