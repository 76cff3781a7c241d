"""Worker for billing maintenance.

Runs on Temporal Cloud, listens for tasks and executes the maintenance
workflow and its activities (overdue marking, pending payment
reconciliation, payment reference sync).

Run with --queue <name> to poll a queue other than the configured one.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.config import get_settings
from temporal_client import get_temporal_client
from workflows.maintenance_workflow import BillingMaintenanceWorkflow
from activities.maintenance import (
    mark_overdue,
    reconcile_pending_payments,
    sync_payment_references,
)


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

MAINTENANCE_WORKFLOWS = [BillingMaintenanceWorkflow]

MAINTENANCE_ACTIVITIES = [
    mark_overdue,
    reconcile_pending_payments,
    sync_payment_references,
]


async def run_worker(queue: str = None):
    """Start worker listening on the maintenance task queue.

    Args:
        queue: Task queue to poll (default: BILLING_TASK_QUEUE)

    Raises:
        Exception: If connection to Temporal Cloud fails
    """
    client = None
    task_queue = queue or get_settings().task_queue

    try:
        client = await get_temporal_client()
        logger.info(f"Connected to Temporal Cloud: {client.namespace}")

        worker = Worker(
            client,
            task_queue=task_queue,
            workflows=MAINTENANCE_WORKFLOWS,
            activities=MAINTENANCE_ACTIVITIES,
        )

        logger.info(f"Worker created for queue '{task_queue}':")
        logger.info(f"  - Workflows: {len(MAINTENANCE_WORKFLOWS)}")
        logger.info(f"  - Activities: {len(MAINTENANCE_ACTIVITIES)}")

        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()

    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except Exception as e:
        logger.error(f"Worker error: {e}", exc_info=True)
        raise


def main():
    """Entry point for worker with CLI args."""
    parser = argparse.ArgumentParser(description="Billing Maintenance Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=None,
        help="Task queue to poll (default: BILLING_TASK_QUEUE or billing-maintenance)"
    )

    args = parser.parse_args()
    asyncio.run(run_worker(queue=args.queue))


if __name__ == "__main__":
    main()
