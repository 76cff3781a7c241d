"""Core module - shared billing types, configuration and cross-cutting concerns.

This module contains the billing record models, error taxonomy, settings,
audit trail and observability helpers used by numbering, settlement and
reconciliation.
"""

__version__ = "1.0.0"
