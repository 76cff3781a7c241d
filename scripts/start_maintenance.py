"""Start the billing maintenance workflow on Temporal.

Marks overdue invoices and syncs invoice payment references, then prints
the per-pass counts. Pending payments are reconciled only when the run
names references or passes --all with a tenant or company.

Usage:
    python scripts/start_maintenance.py [--company CO-1] [--as-of 2025-10-31]
    python scripts/start_maintenance.py --tenant T-1 --refs PAY-2025-10-001,TXN-20251003-0002
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path
import logging

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from temporal_client import get_temporal_client
from workflows.maintenance_workflow import BillingMaintenanceWorkflow, MaintenanceInput


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def start_maintenance_workflow(input: MaintenanceInput, task_queue: str) -> dict:
    """Start BillingMaintenanceWorkflow and wait for its counts."""
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    handle = await client.start_workflow(
        BillingMaintenanceWorkflow.run,
        input,
        task_queue=task_queue,
        id=f"billing-maintenance-{input.company_id or 'all'}-{int(time.time() * 1000)}",
    )
    logger.info(f"Workflow started: {handle.id}")

    result = await handle.result()
    logger.info("✓ Workflow completed successfully")
    return result


def main():
    parser = argparse.ArgumentParser(description="Run billing maintenance on Temporal")
    parser.add_argument("--company", dest="company_id", help="Restrict to one company")
    parser.add_argument("--as-of", dest="as_of", help="ISO date for the overdue comparison")
    parser.add_argument("--db", dest="db_path", help="Ledger database seen by the worker")
    parser.add_argument("--queue", default=None, help="Task queue (default: BILLING_TASK_QUEUE)")
    parser.add_argument("--tenant", dest="tenant_id", help="Tenant whose pending payments are reconciled")
    parser.add_argument("--refs", default="", help="Comma-separated pending payment references to reconcile")
    parser.add_argument("--all", dest="include_all", action="store_true",
                        help="Reconcile every referenced pending payment of the tenant or company")
    args = parser.parse_args()

    if args.include_all and not (args.tenant_id or args.company_id):
        parser.error("--all needs --tenant or --company")

    input = MaintenanceInput(
        company_id=args.company_id,
        as_of=args.as_of,
        db_path=args.db_path,
        reconcile_tenant_id=args.tenant_id,
        reconcile_references=[r.strip() for r in args.refs.split(",") if r.strip()],
        reconcile_all=args.include_all,
    )
    try:
        result = asyncio.run(start_maintenance_workflow(input, args.queue or get_settings().task_queue))
        print(result)
        return 0
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
