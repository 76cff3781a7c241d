"""Settlement module - invoice and payment lifecycle.

Components:
- states: Transition tables for invoices and payments
- placeholders: Recognition of internally generated in-flight references
- machine: SettlementStateMachine (transitions, receipts, recompute, audit)
"""

from settlement.machine import SettlementStateMachine
from settlement.placeholders import is_placeholder, new_placeholder
from settlement.states import can_transition_invoice, can_transition_payment

__all__ = [
    "SettlementStateMachine",
    "is_placeholder",
    "new_placeholder",
    "can_transition_invoice",
    "can_transition_payment",
]
