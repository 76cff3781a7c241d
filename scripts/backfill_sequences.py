"""
Rebuild number sequence counters from historical document numbers.

Parses every stored invoice, lease, receipt, payment reference and
transaction reference (current and deprecated formats) and sets each
scope's counter to the highest sequence found.

Usage:
    python scripts/backfill_sequences.py [--dry-run] [--db path/to/billing.db]
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from numbering.backfill import rebuild_sequence_counters
from storage.db import LedgerStore


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild number sequence counters")
    parser.add_argument("--dry-run", action="store_true", help="Compute without writing")
    parser.add_argument("--db", type=Path, help="Ledger database (default: BILLING_DB_PATH)")
    args = parser.parse_args()

    store = LedgerStore(args.db) if args.db else LedgerStore()
    store.init_db()
    counters = rebuild_sequence_counters(store, dry_run=args.dry_run)

    print("=" * 60)
    print("SEQUENCE COUNTERS" + (" (dry run)" if args.dry_run else ""))
    print("=" * 60)
    for key, sequence in counters.items():
        print(f"  {key:<50} {sequence:>6}")
    print(f"\n{len(counters)} scope(s)")


if __name__ == "__main__":
    main()
