"""
Sequence allocator tests.

Runs the allocator against a real ledger database in tmp_path, plus an
in-memory store for collision handling (a real store only collides when
something writes numbers behind the allocator's back).
"""

import threading
import uuid
from datetime import date
from decimal import Decimal

import pytest

from core.audit import AuditLogger, InMemoryAuditBackend
from core.errors import CollisionExhausted
from core.models.billing import Invoice
from core.observability.metrics import get_metrics
from numbering.allocator import MAX_ALLOCATION_ATTEMPTS, SequenceAllocator, scan_latest_sequence
from numbering.backfill import rebuild_sequence_counters
from numbering.models import DocumentKind, Period, ScopeKey, TenantScope
from numbering.scope import resolve_scope
from storage.db import LedgerStore


TENANT = TenantScope(company_id="co-1")
OCTOBER = date(2025, 10, 15)


@pytest.fixture
def store(tmp_path):
    store = LedgerStore(tmp_path / "ledger.db")
    store.init_db()
    return store


def insert_invoice(store, number, company_id="co-1", issue_date=OCTOBER):
    with store.transaction() as session:
        session.insert_invoice(Invoice(
            id=str(uuid.uuid4()),
            company_id=company_id,
            number=number,
            total_amount=Decimal("100"),
            issue_date=issue_date,
        ))


def allocate(store, scope, allocator=None):
    allocator = allocator or SequenceAllocator()
    with store.transaction() as session:
        return allocator.allocate(session, scope)


class FakeNumberStore:
    """Numbers the scan does not see but the existence check does."""

    def __init__(self, taken=None, counter=0):
        self.taken = set(taken or ())
        self.counter = counter

    def list_document_numbers(self, company_id, kind, prefixes):
        return []

    def document_number_exists(self, company_id, kind, number):
        return number in self.taken

    def get_sequence_counter(self, scope):
        return self.counter

    def advance_sequence_counter(self, scope, sequence):
        self.counter = max(self.counter, sequence)


class TestAllocation:

    def test_sequential_in_scope(self, store):
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)
        numbers = [allocate(store, scope) for _ in range(3)]
        assert numbers == ["INV-2025-10-0001", "INV-2025-10-0002", "INV-2025-10-0003"]

    def test_period_resets_sequence(self, store):
        allocate(store, resolve_scope(TENANT, DocumentKind.RECEIPT, OCTOBER))
        allocate(store, resolve_scope(TENANT, DocumentKind.RECEIPT, OCTOBER))
        november = allocate(store, resolve_scope(TENANT, DocumentKind.RECEIPT, date(2025, 11, 1)))
        assert november == "RCT-2025-11-0001"

    def test_daily_reset_for_transaction_references(self, store):
        first = allocate(store, resolve_scope(TENANT, DocumentKind.TRANSACTION_REFERENCE, date(2025, 10, 19)))
        second = allocate(store, resolve_scope(TENANT, DocumentKind.TRANSACTION_REFERENCE, date(2025, 10, 19)))
        next_day = allocate(store, resolve_scope(TENANT, DocumentKind.TRANSACTION_REFERENCE, date(2025, 10, 20)))
        assert (first, second, next_day) == ("TXN-20251019-0001", "TXN-20251019-0002", "TXN-20251020-0001")

    def test_property_subscope_is_independent(self, store):
        plain = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)
        skyline = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER, property_name="Skyline")
        allocate(store, plain)
        allocate(store, plain)
        assert allocate(store, skyline) == "INV-SKY-2025-10-0001"
        assert allocate(store, plain) == "INV-2025-10-0003"

    def test_companies_do_not_share_sequences(self, store):
        scope_a = resolve_scope(TENANT, DocumentKind.LEASE, OCTOBER)
        scope_b = resolve_scope(TenantScope(company_id="co-2"), DocumentKind.LEASE, OCTOBER)
        allocate(store, scope_a)
        assert allocate(store, scope_b) == "LSE-2025-10-0001"

    def test_legacy_numbers_count_toward_scope(self, store):
        insert_invoice(store, "INV-2510-041")
        insert_invoice(store, "INV-2025-10-0007")
        assert allocate(store, resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)) == "INV-2025-10-0042"

    def test_existing_numbers_without_counter(self, store):
        insert_invoice(store, "INV-SKY-2025-10-0009")
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER, property_code="SKY")
        with store.transaction() as session:
            assert scan_latest_sequence(session, scope) == 9
        assert allocate(store, scope) == "INV-SKY-2025-10-0010"

    def test_counter_ahead_of_scan_wins(self, store):
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)
        with store.transaction() as session:
            session.set_sequence_counter("co-1", DocumentKind.INVOICE, scope.counter_key, 20)
        insert_invoice(store, "INV-2025-10-0005")
        assert allocate(store, scope) == "INV-2025-10-0021"

    def test_rolled_back_allocation_does_not_advance(self, store):
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)
        allocator = SequenceAllocator()
        with pytest.raises(RuntimeError):
            with store.transaction() as session:
                allocator.allocate(session, scope)
                raise RuntimeError("insert failed")
        assert allocate(store, scope, allocator) == "INV-2025-10-0001"

    def test_concurrent_allocations_are_unique(self, store):
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)
        allocator = SequenceAllocator()
        numbers, errors = [], []
        lock = threading.Lock()

        def worker():
            try:
                with store.transaction() as session:
                    number = allocator.allocate(session, scope)
                    session.insert_invoice(Invoice(
                        id=str(uuid.uuid4()),
                        company_id="co-1",
                        number=number,
                        total_amount=Decimal("10"),
                        issue_date=OCTOBER,
                    ))
                with lock:
                    numbers.append(number)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(numbers)) == 12
        assert sorted(numbers) == [f"INV-2025-10-{i:04d}" for i in range(1, 13)]


class TestCollisionHandling:

    SCOPE = ScopeKey("co-1", DocumentKind.RECEIPT, Period(2025, 10))

    def test_retries_past_taken_numbers(self):
        fake = FakeNumberStore(taken={"RCT-2025-10-0001", "RCT-2025-10-0002", "RCT-2025-10-0003"})
        before = get_metrics().get_summary()["numbering"]["collisions"]

        number = SequenceAllocator().allocate(fake, self.SCOPE)

        assert number == "RCT-2025-10-0004"
        assert fake.counter == 4
        assert get_metrics().get_summary()["numbering"]["collisions"] == before + 3

    def test_collisions_are_audited(self):
        backend = InMemoryAuditBackend()
        audit = AuditLogger()
        audit.add_backend(backend)
        fake = FakeNumberStore(taken={"RCT-2025-10-0001"})

        SequenceAllocator(audit=audit).allocate(fake, self.SCOPE)

        events = audit.query(event_type="NUMBER_COLLISION")
        assert len(events) == 1
        assert events[0].document_number == "RCT-2025-10-0001"

    def test_exhaustion_after_fixed_budget(self):
        fake = FakeNumberStore(taken={f"RCT-2025-10-{i:04d}" for i in range(1, 50)})

        with pytest.raises(CollisionExhausted) as exc:
            SequenceAllocator().allocate(fake, self.SCOPE)

        error = exc.value
        assert error.attempts == MAX_ALLOCATION_ATTEMPTS == 10
        assert error.last_candidate == "RCT-2025-10-0010"
        assert error.retry_safe
        assert error.to_dict()["details"]["last_candidate"] == "RCT-2025-10-0010"
        assert fake.counter == 0

    def test_last_attempt_can_succeed(self):
        fake = FakeNumberStore(taken={f"RCT-2025-10-{i:04d}" for i in range(1, MAX_ALLOCATION_ATTEMPTS)})
        assert SequenceAllocator().allocate(fake, self.SCOPE) == "RCT-2025-10-0010"


class TestBackfill:

    def test_rebuild_from_mixed_formats(self, store):
        insert_invoice(store, "INV-2510-041")
        insert_invoice(store, "INV-SKY-2025-10-0003")
        insert_invoice(store, "INV-2025-09-0012", issue_date=date(2025, 9, 1))
        insert_invoice(store, "INV-2025-10-0002", company_id="co-2")
        insert_invoice(store, "legacy-free-text")

        counters = rebuild_sequence_counters(store)

        assert counters == {
            "co-1/invoice/2025-09": 12,
            "co-1/invoice/2025-10": 41,
            "co-1/invoice/2025-10|SKY": 3,
            "co-2/invoice/2025-10": 2,
        }
        assert allocate(store, resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)) == "INV-2025-10-0042"

    def test_rebuild_lowers_inflated_counters(self, store):
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)
        with store.transaction() as session:
            session.set_sequence_counter("co-1", DocumentKind.INVOICE, scope.counter_key, 500)
        insert_invoice(store, "INV-2025-10-0004")

        rebuild_sequence_counters(store)

        with store.transaction() as session:
            assert session.get_sequence_counter(scope) == 4

    def test_dry_run_writes_nothing(self, store):
        insert_invoice(store, "INV-2025-10-0004")
        scope = resolve_scope(TENANT, DocumentKind.INVOICE, OCTOBER)

        counters = rebuild_sequence_counters(store, dry_run=True)

        assert counters == {"co-1/invoice/2025-10": 4}
        with store.transaction() as session:
            assert session.get_sequence_counter(scope) == 0
