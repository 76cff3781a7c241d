"""API Routes Package."""

from api.routes import health, invoices, leases, payments

__all__ = [
    "health",
    "invoices",
    "leases",
    "payments",
]
