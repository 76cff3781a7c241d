"""Reconciliation module - keeps payments and invoices consistent."""

from reconciliation.engine import PendingPaymentFilter, ReconciliationEngine

__all__ = [
    "PendingPaymentFilter",
    "ReconciliationEngine",
]
