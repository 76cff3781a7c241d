"""
Reconcile pending payments from the command line.

Promotes pending payments to approved (allocating receipt numbers over
placeholders and settling their invoices), or cancels them when other
settled payments already cover the invoice.

Usage:
    python scripts/reconcile_pending.py --tenant T-1 --refs PAY-2025-10-001,PAY-2025-10-002
    python scripts/reconcile_pending.py --company CO-1 --all
"""

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.errors import ValidationError
from reconciliation.engine import PendingPaymentFilter, ReconciliationEngine
from storage.db import LedgerStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Reconcile pending payments")
    parser.add_argument("--tenant", dest="tenant_id", help="Restrict to one tenant")
    parser.add_argument("--company", dest="company_id", help="Restrict to one company")
    parser.add_argument("--refs", help="Comma-separated reference numbers / transaction ids")
    parser.add_argument("--all", action="store_true", help="Every pending payment with any reference")
    parser.add_argument("--db", type=Path, help="Ledger database (default: BILLING_DB_PATH)")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    references = [r.strip() for r in (args.refs or "").split(",") if r.strip()]
    store = LedgerStore(args.db) if args.db else LedgerStore()
    store.init_db()
    engine = ReconciliationEngine(store)

    try:
        report = engine.reconcile_pending(PendingPaymentFilter(
            company_id=args.company_id,
            tenant_id=args.tenant_id,
            references=references,
            include_all=args.all,
        ))
    except ValidationError as e:
        parser.error(e.message)

    if args.json:
        data = report.model_dump()
        data.update(reconciled_count=report.reconciled_count, updated_ids=report.updated_ids)
        print(json.dumps(data, indent=2))
    else:
        print(f"✅ Reconciled {report.reconciled_count} pending payment(s).")
        if report.updated_ids:
            print(f"Updated IDs: {', '.join(report.updated_ids)}")
        if report.cancelled_ids:
            print(f"Cancelled (already covered): {', '.join(report.cancelled_ids)}")
        for failure in report.failures:
            print(f"❌ {failure.item_id}: {failure.error} - {failure.message}")

    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
