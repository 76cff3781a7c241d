"""Legal status transitions for invoices and payments."""

from typing import Dict, FrozenSet

from core.errors import IllegalTransitionError
from core.models.billing import InvoiceStatus, PaymentStatus


INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.SENT, InvoiceStatus.CANCELLED}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    # Reopened only when a refund or reversal drops coverage below the total
    InvoiceStatus.PAID: frozenset({InvoiceStatus.SENT, InvoiceStatus.OVERDUE}),
    InvoiceStatus.CANCELLED: frozenset(),
}

# Targets that only settlement recompute may set
RECOMPUTE_ONLY_INVOICE_TARGETS = frozenset({InvoiceStatus.PAID})
RECOMPUTE_ONLY_INVOICE_SOURCES = frozenset({InvoiceStatus.PAID})

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.APPROVED,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.REVERSED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.REVERSED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.REVERSED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def can_transition_invoice(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return InvoiceStatus(target) in INVOICE_TRANSITIONS[InvoiceStatus(current)]


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return PaymentStatus(target) in PAYMENT_TRANSITIONS[PaymentStatus(current)]


def check_invoice_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
    if not can_transition_invoice(current, target):
        raise IllegalTransitionError(
            f"Invoice cannot move from {InvoiceStatus(current).value} to {InvoiceStatus(target).value}",
            {"from": InvoiceStatus(current).value, "to": InvoiceStatus(target).value},
        )


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition_payment(current, target):
        raise IllegalTransitionError(
            f"Payment cannot move from {PaymentStatus(current).value} to {PaymentStatus(target).value}",
            {"from": PaymentStatus(current).value, "to": PaymentStatus(target).value},
        )
