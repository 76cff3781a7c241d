"""Shared fixtures: a fresh ledger database per test and helpers to seed it."""

import uuid
from datetime import date
from decimal import Decimal

import pytest

from api.services.documents import DocumentService
from core.models.billing import Payment, PaymentStatus
from numbering.models import TenantScope
from reconciliation.engine import ReconciliationEngine
from storage.db import LedgerStore, utcnow


ISSUE_DATE = date(2025, 10, 1)
DUE_DATE = date(2025, 10, 31)


@pytest.fixture
def store(tmp_path):
    store = LedgerStore(tmp_path / "ledger.db")
    store.init_db()
    return store


@pytest.fixture
def engine(store):
    return ReconciliationEngine(store)


@pytest.fixture
def documents(engine):
    return DocumentService(engine)


@pytest.fixture
def tenant():
    return TenantScope(company_id="co-1", user_id="clerk-1")


@pytest.fixture
def make_invoice(documents, tenant):
    """Create a sent invoice through the document service."""

    def _make(total="1000", **kwargs):
        kwargs.setdefault("issue_date", ISSUE_DATE)
        kwargs.setdefault("due_date", DUE_DATE)
        kwargs.setdefault("tenant_id", "tenant-1")
        return documents.create_invoice(kwargs.pop("scope", tenant), total, **kwargs)

    return _make


@pytest.fixture
def add_payment(store):
    """Insert a payment row directly, bypassing the state machine."""

    def _add(invoice=None, amount="100", status=PaymentStatus.PENDING, **fields):
        now = utcnow()
        fields.setdefault("company_id", invoice.company_id if invoice else "co-1")
        fields.setdefault("invoice_id", invoice.id if invoice else None)
        fields.setdefault("tenant_id", invoice.tenant_id if invoice else "tenant-1")
        fields.setdefault("currency", invoice.currency if invoice else "KES")
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        payment = Payment(
            id=str(uuid.uuid4()),
            amount=Decimal(amount),
            status=status,
            **fields,
        )
        with store.transaction() as session:
            session.insert_payment(payment)
        return payment

    return _add


@pytest.fixture
def reload(store):
    """Fetch the current row of an invoice or payment."""

    def _reload(record):
        with store.transaction() as session:
            if hasattr(record, "number"):
                return session.get_invoice(record.id)
            return session.get_payment(record.id)

    return _reload
