"""
Reconciliation engine tests.

Pass criteria:
- Pending payments are promoted (or cancelled when already covered) and
  their invoices end up paid exactly when covered
- A provider event settles an invoice once, however often it is delivered
- Batch passes collect per-item failures instead of aborting
"""

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from core.errors import IllegalTransitionError, NotFoundError, ValidationError
from core.models.billing import InvoiceStatus, PaymentStatus
from core.observability.metrics import get_metrics
from numbering.models import TenantScope
from reconciliation.engine import (
    CANCELLED_SUPERSEDED_NOTE,
    PendingPaymentFilter,
    RECONCILED_NOTE,
)
from settlement.placeholders import is_placeholder, new_placeholder


EVENT_TIME = datetime(2025, 10, 19, 9, 30)


def payments_of(store, invoice):
    with store.transaction() as session:
        return session.list_payments(invoice.id)


class TestReconcilePending:

    def test_promotes_by_reference(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        payment = add_payment(
            invoice, "1000",
            receipt_number=new_placeholder(),
            reference_number="PAY-2025-10-001",
        )

        report = engine.reconcile_pending(PendingPaymentFilter(references=["PAY-2025-10-001"]))

        assert report.reconciled_ids == [payment.id]
        assert report.reconciled_count == 1
        payment = reload(payment)
        assert payment.status == PaymentStatus.APPROVED
        assert payment.payment_method == "online"
        assert payment.notes == RECONCILED_NOTE
        assert payment.receipt_number.startswith("RCT-")
        assert reload(invoice).status == InvoiceStatus.PAID

    def test_matches_transaction_id_too(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        payment = add_payment(invoice, "500", transaction_id="TXN-20251019-0001", payment_method="mpesa")

        report = engine.reconcile_pending(PendingPaymentFilter(references=[" TXN-20251019-0001 "]))

        assert report.reconciled_ids == [payment.id]
        assert reload(payment).payment_method == "mpesa"

    def test_split_payments_settle_invoice(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        add_payment(invoice, "400", reference_number="PAY-2025-10-001")
        add_payment(invoice, "600", reference_number="PAY-2025-10-002")

        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert len(report.reconciled_ids) == 2
        assert reload(invoice).status == InvoiceStatus.PAID

    def test_short_payments_leave_invoice_sent(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        add_payment(invoice, "400", reference_number="PAY-2025-10-001")
        add_payment(invoice, "300", reference_number="PAY-2025-10-002")

        engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert reload(invoice).status == InvoiceStatus.SENT

    def test_superseded_pending_is_cancelled_not_deleted(self, engine, store, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        add_payment(invoice, "1000", status=PaymentStatus.APPROVED, receipt_number="RCT-2025-10-0001")
        stale = add_payment(invoice, "1000", reference_number="PAY-2025-10-001", notes="Initiated online")

        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert report.cancelled_ids == [stale.id]
        assert report.reconciled_ids == []
        stale = reload(stale)
        assert stale.status == PaymentStatus.CANCELLED
        assert stale.notes == f"Initiated online - {CANCELLED_SUPERSEDED_NOTE}"
        # Recomputed while there
        assert reload(invoice).status == InvoiceStatus.PAID
        assert store.query_audit_events(event_type="PLACEHOLDER_CANCELLED", entity_id=stale.id)

    def test_filters_by_tenant_and_company(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        mine = add_payment(invoice, "100", reference_number="PAY-2025-10-001")
        other_tenant = add_payment(invoice, "100", reference_number="PAY-2025-10-002", tenant_id="tenant-2")
        other_company = add_payment(None, "100", reference_number="PAY-2025-10-003", company_id="co-2")

        report = engine.reconcile_pending(PendingPaymentFilter(company_id="co-1", tenant_id="tenant-1", include_all=True))

        assert report.reconciled_ids == [mine.id]
        assert reload(other_tenant).status == PaymentStatus.PENDING
        assert reload(other_company).status == PaymentStatus.PENDING

    def test_include_all_skips_payments_without_references(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        bare = add_payment(invoice, "100")

        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert report.reconciled_count == 0
        assert reload(bare).status == PaymentStatus.PENDING

    @pytest.mark.parametrize("references", [[], ["", "  "]])
    def test_requires_selection(self, engine, references):
        with pytest.raises(ValidationError):
            engine.reconcile_pending(PendingPaymentFilter(references=references))

    def test_bad_item_does_not_abort_batch(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        orphan = add_payment(None, "100", invoice_id="missing-invoice", reference_number="PAY-2025-10-001")
        good = add_payment(invoice, "1000", reference_number="PAY-2025-10-002")
        before = get_metrics().get_summary()["reconciliation"]["failed"]

        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert report.reconciled_ids == [good.id]
        assert [(f.item_id, f.error) for f in report.failures] == [(orphan.id, "not_found")]
        assert reload(orphan).status == PaymentStatus.PENDING
        assert reload(invoice).status == InvoiceStatus.PAID
        assert get_metrics().get_summary()["reconciliation"]["failed"] == before + 1

    def test_corrupt_invoice_does_not_abort_batch(self, engine, store, make_invoice, add_payment, reload):
        corrupt = make_invoice("1000")
        healthy = make_invoice("1000")
        broken = add_payment(corrupt, "400", status=PaymentStatus.APPROVED, receipt_number="RCT-2025-10-0001")
        stuck = add_payment(corrupt, "600", reference_number="PAY-2025-10-001")
        good = add_payment(healthy, "1000", reference_number="PAY-2025-10-002")
        with store.transaction() as session:
            session.conn.execute("UPDATE payments SET amount = 'garbage' WHERE id = ?", (broken.id,))

        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert report.reconciled_ids == [good.id]
        assert [(f.item_id, f.error) for f in report.failures] == [(stuck.id, "inconsistent_state")]
        assert reload(stuck).status == PaymentStatus.PENDING
        assert reload(healthy).status == InvoiceStatus.PAID

    def test_unexpected_error_is_recorded_per_item(self, engine, make_invoice, add_payment, reload, monkeypatch):
        first = make_invoice("1000")
        second = make_invoice("1000")
        failing = add_payment(first, "1000", reference_number="PAY-2025-10-001")
        good = add_payment(second, "1000", reference_number="PAY-2025-10-002")
        transition = engine.machine.transition_payment

        def flaky_transition(session, payment, target, **kwargs):
            if payment.id == failing.id:
                raise RuntimeError("disk on fire")
            return transition(session, payment, target, **kwargs)

        monkeypatch.setattr(engine.machine, "transition_payment", flaky_transition)

        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert report.reconciled_ids == [good.id]
        assert [(f.item_id, f.error, f.message) for f in report.failures] == [
            (failing.id, "internal_error", "RuntimeError: disk on fire"),
        ]
        assert reload(failing).status == PaymentStatus.PENDING
        assert reload(first).status == InvoiceStatus.SENT

    def test_second_run_is_a_no_op(self, engine, make_invoice, add_payment):
        invoice = make_invoice("1000")
        add_payment(invoice, "1000", reference_number="PAY-2025-10-001")

        engine.reconcile_pending(PendingPaymentFilter(include_all=True))
        report = engine.reconcile_pending(PendingPaymentFilter(include_all=True))

        assert report.reconciled_count == 0
        assert report.failures == []


class TestIngestExternalEvent:

    def test_new_reference_settles_invoice(self, engine, store, make_invoice, reload):
        invoice = make_invoice("1000")

        payment = engine.ingest_external_event("QK7MX2ABCD", invoice.id, "1000", EVENT_TIME, payment_method="mpesa")

        assert payment.status == PaymentStatus.APPROVED
        assert payment.transaction_id == "QK7MX2ABCD"
        assert payment.reference_number == "QK7MX2ABCD"
        assert payment.receipt_number == "RCT-2025-10-0001"
        invoice = reload(invoice)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.payment_reference == "RCT-2025-10-0001"
        assert invoice.payment_method == "mpesa"
        assert invoice.paid_date == EVENT_TIME
        assert store.query_audit_events(event_type="PAYMENT_INGESTED", entity_id=payment.id)

    def test_duplicate_delivery_is_idempotent(self, engine, store, make_invoice):
        invoice = make_invoice("1000")
        before = get_metrics().get_summary()["reconciliation"]["duplicate_events"]

        first = engine.ingest_external_event("QK7MX2ABCD", invoice.id, Decimal("1000"), EVENT_TIME)
        second = engine.ingest_external_event("QK7MX2ABCD", invoice.id, Decimal("1000"), EVENT_TIME)

        assert second.id == first.id
        assert len(payments_of(store, invoice)) == 1
        assert get_metrics().get_summary()["reconciliation"]["duplicate_events"] == before + 1

    def test_replaces_pending_placeholders(self, engine, store, documents, tenant, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        intent = documents.create_payment_intent(tenant, invoice.id)
        failed = add_payment(invoice, "1000", status=PaymentStatus.FAILED, receipt_number=new_placeholder())

        payment = engine.ingest_external_event("QK7MX2ABCD", invoice.id, "1000", EVENT_TIME)

        ids = {p.id for p in payments_of(store, invoice)}
        assert ids == {payment.id, failed.id}
        assert reload(intent) is None
        deleted = store.query_audit_events(event_type="PLACEHOLDER_DELETED", entity_id=intent.id)
        assert deleted[0].details["superseded_by"] == "QK7MX2ABCD"

    def test_event_for_known_transaction_settles_pending(self, engine, store, documents, tenant, make_invoice, reload):
        invoice = make_invoice("1000")
        intent = documents.create_payment_intent(tenant, invoice.id, payment_method="card")

        payment = engine.ingest_external_event(intent.transaction_id, invoice.id, "1000", EVENT_TIME)

        assert payment.id == intent.id
        assert payment.status == PaymentStatus.APPROVED
        assert payment.payment_method == "card"
        assert not is_placeholder(payment.receipt_number)
        assert payment.payment_date == EVENT_TIME
        assert reload(invoice).status == InvoiceStatus.PAID

    def test_partial_event_keeps_invoice_open(self, engine, make_invoice, reload):
        invoice = make_invoice("1000")
        engine.ingest_external_event("QK7MX2ABCD", invoice.id, "400", EVENT_TIME)
        assert reload(invoice).status == InvoiceStatus.SENT

        engine.ingest_external_event("QK7MX2ABCE", invoice.id, "600", EVENT_TIME)
        assert reload(invoice).status == InvoiceStatus.PAID

    def test_timezone_aware_timestamp(self, engine, make_invoice, reload):
        invoice = make_invoice("1000")
        payment = engine.ingest_external_event(
            "QK7MX2ABCD", invoice.id, "1000", datetime(2025, 10, 19, 12, 30, tzinfo=timezone.utc),
        )
        assert reload(payment).payment_date == datetime(2025, 10, 19, 12, 30)

    def test_receipt_month_matches_stored_payment_date(self, engine, make_invoice, reload):
        invoice = make_invoice("1000")
        occurred_at = datetime(2025, 10, 31, 23, 30, tzinfo=timezone(timedelta(hours=-5)))

        payment = engine.ingest_external_event("QK7MX2ABCD", invoice.id, "1000", occurred_at)

        assert payment.receipt_number == "RCT-2025-11-0001"
        assert payment.payment_date == datetime(2025, 11, 1, 4, 30)
        assert reload(payment).payment_date == datetime(2025, 11, 1, 4, 30)
        assert reload(invoice).paid_date == datetime(2025, 11, 1, 4, 30)

    @pytest.mark.parametrize("reference,amount,occurred_at", [
        ("", "100", EVENT_TIME),
        ("   ", "100", EVENT_TIME),
        ("QK7MX2ABCD", "0", EVENT_TIME),
        ("QK7MX2ABCD", "-5", EVENT_TIME),
        ("QK7MX2ABCD", "abc", EVENT_TIME),
        ("QK7MX2ABCD", "NaN", EVENT_TIME),
        ("QK7MX2ABCD", "Infinity", EVENT_TIME),
        ("QK7MX2ABCD", "100", date(2025, 10, 19)),
        ("QK7MX2ABCD", "100", None),
    ])
    def test_rejects_malformed_events(self, engine, store, make_invoice, reference, amount, occurred_at):
        invoice = make_invoice("1000")
        with pytest.raises(ValidationError):
            engine.ingest_external_event(reference, invoice.id, amount, occurred_at)
        assert payments_of(store, invoice) == []

    def test_unknown_invoice(self, engine):
        with pytest.raises(NotFoundError):
            engine.ingest_external_event("QK7MX2ABCD", "missing", "100", EVENT_TIME)

    def test_concurrent_deliveries_create_one_payment(self, engine, store, make_invoice, reload):
        invoice = make_invoice("1000")
        results, errors = [], []
        lock = threading.Lock()

        def deliver():
            try:
                payment = engine.ingest_external_event("QK7MX2ABCD", invoice.id, "1000", EVENT_TIME)
                with lock:
                    results.append(payment.id)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(set(results)) == 1
        assert len(payments_of(store, invoice)) == 1
        assert reload(invoice).status == InvoiceStatus.PAID


class TestSyncPaymentReferences:

    def test_points_at_latest_payment(self, engine, make_invoice, add_payment, reload):
        invoice = make_invoice("1000")
        add_payment(invoice, "100", status=PaymentStatus.APPROVED, receipt_number="RCT-2025-10-0001",
                    payment_date=datetime(2025, 10, 2))
        add_payment(invoice, "100", status=PaymentStatus.APPROVED, receipt_number="RCT-2025-10-0002",
                    payment_date=datetime(2025, 10, 9))
        add_payment(invoice, "100", status=PaymentStatus.CANCELLED, receipt_number="RCT-2025-10-0003",
                    payment_date=datetime(2025, 10, 20))

        report = engine.sync_invoice_payment_references()

        assert report.updated_ids == [invoice.id]
        assert reload(invoice).payment_reference == "RCT-2025-10-0002"

        again = engine.sync_invoice_payment_references()
        assert again.updated_count == 0

    def test_scoped_to_company(self, engine, tenant, make_invoice, add_payment, reload):
        mine = make_invoice("100")
        theirs = make_invoice("100", scope=TenantScope(company_id="co-2"))
        add_payment(mine, "100", receipt_number="RCT-2025-10-0001")
        add_payment(theirs, "100", receipt_number="RCT-2025-10-0001")

        report = engine.sync_invoice_payment_references(company_id="co-2")

        assert report.updated_ids == [theirs.id]
        assert reload(mine).payment_reference is None


class TestMarkOverdue:

    def test_marks_only_past_due_sent_invoices(self, engine, documents, tenant, make_invoice, add_payment, reload):
        past_due = make_invoice("100", due_date=date(2025, 10, 10))
        not_due = make_invoice("100", due_date=date(2025, 11, 30))
        no_due_date = make_invoice("100", due_date=None)
        draft = documents.create_invoice(tenant, "100", date(2025, 10, 1), due_date=date(2025, 10, 5),
                                         status=InvoiceStatus.DRAFT)
        paid = make_invoice("100", due_date=date(2025, 10, 10))
        engine.ingest_external_event("QK7MX2ABCD", paid.id, "100", EVENT_TIME)

        report = engine.mark_overdue_invoices(as_of=date(2025, 10, 20))

        assert report.updated_ids == [past_due.id]
        assert reload(past_due).status == InvoiceStatus.OVERDUE
        assert reload(not_due).status == InvoiceStatus.SENT
        assert reload(no_due_date).status == InvoiceStatus.SENT
        assert reload(draft).status == InvoiceStatus.DRAFT
        assert reload(paid).status == InvoiceStatus.PAID

    def test_due_today_is_not_overdue(self, engine, make_invoice, reload):
        invoice = make_invoice("100", due_date=date(2025, 10, 20))
        engine.mark_overdue_invoices(as_of=date(2025, 10, 20))
        assert reload(invoice).status == InvoiceStatus.SENT

    def test_overdue_invoice_can_still_be_paid(self, engine, make_invoice, reload):
        invoice = make_invoice("100", due_date=date(2025, 10, 10))
        engine.mark_overdue_invoices(as_of=date(2025, 10, 20))

        engine.ingest_external_event("QK7MX2ABCD", invoice.id, "100", EVENT_TIME)

        assert reload(invoice).status == InvoiceStatus.PAID


class TestReversePayment:

    def test_reversal_reopens_invoice(self, engine, make_invoice, reload):
        invoice = make_invoice("1000", due_date=None)
        payment = engine.ingest_external_event("QK7MX2ABCD", invoice.id, "1000", EVENT_TIME)

        reversed_payment = engine.reverse_payment(payment.id, reason="chargeback")

        assert reversed_payment.status == PaymentStatus.REVERSED
        assert reversed_payment.notes.endswith("Reversed: chargeback")
        assert reload(invoice).status == InvoiceStatus.SENT

    def test_refund(self, engine, make_invoice):
        invoice = make_invoice("1000")
        payment = engine.ingest_external_event("QK7MX2ABCD", invoice.id, "1000", EVENT_TIME)
        assert engine.reverse_payment(payment.id, refund=True).status == PaymentStatus.REFUNDED

    def test_pending_payment_cannot_be_reversed(self, engine, make_invoice, add_payment):
        payment = add_payment(make_invoice("1000"), "1000")
        with pytest.raises(IllegalTransitionError):
            engine.reverse_payment(payment.id)

    def test_unknown_payment(self, engine):
        with pytest.raises(NotFoundError):
            engine.reverse_payment("missing")


class TestLinkUnmatchedPayments:

    def test_links_to_oldest_matching_invoice(self, engine, make_invoice, add_payment, reload):
        older = make_invoice("750", issue_date=date(2025, 9, 1), due_date=date(2025, 9, 30))
        newer = make_invoice("750", issue_date=date(2025, 10, 1))
        other_amount = make_invoice("800", issue_date=date(2025, 8, 1), due_date=date(2025, 8, 31))
        payment = add_payment(None, "750", status=PaymentStatus.APPROVED, receipt_number="RCT-2025-10-0001")

        report = engine.link_unmatched_payments("co-1")

        assert report.updated_ids == [older.id]
        assert reload(payment).invoice_id == older.id
        assert reload(older).status == InvoiceStatus.PAID
        assert reload(newer).status == InvoiceStatus.SENT
        assert reload(other_amount).status == InvoiceStatus.SENT

    def test_no_match_leaves_payment_unlinked(self, engine, make_invoice, add_payment, reload):
        make_invoice("1000")
        payment = add_payment(None, "999", status=PaymentStatus.APPROVED)

        report = engine.link_unmatched_payments("co-1")

        assert report.updated_count == 0
        assert reload(payment).invoice_id is None
