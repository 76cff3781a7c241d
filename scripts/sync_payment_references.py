"""
Backfill invoice payment references.

Sets every invoice's payment_reference to the receipt number of its most
recent non-cancelled payment.

Usage:
    python scripts/sync_payment_references.py [--company CO-1] [--db path/to/billing.db]
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from reconciliation.engine import ReconciliationEngine
from storage.db import LedgerStore


def main() -> int:
    parser = argparse.ArgumentParser(description="Sync invoice payment references")
    parser.add_argument("--company", dest="company_id", help="Restrict to one company")
    parser.add_argument("--db", type=Path, help="Ledger database (default: BILLING_DB_PATH)")
    args = parser.parse_args()

    store = LedgerStore(args.db) if args.db else LedgerStore()
    store.init_db()
    report = ReconciliationEngine(store).sync_invoice_payment_references(args.company_id)

    print(f"✅ Updated {report.updated_count} invoice(s).")
    for failure in report.failures:
        print(f"❌ {failure.item_id}: {failure.error} - {failure.message}")
    return 1 if report.failures else 0


if __name__ == "__main__":
    sys.exit(main())
