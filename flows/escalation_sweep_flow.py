# ==== PREFECT ESCALATION SWEEP FLOW ==== #

"""
Prefect flow running the escalation sweep on a schedule.

The FastAPI lifespan already sweeps in the background; this flow serves
deployments that prefer an external scheduler. Both go through the same
``EscalationScheduler``, so the Redis run-lock keeps them from overlapping.
"""

import argparse
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from prefect import flow, task, get_run_logger

from approvals.services.escalation import EscalationScheduler
from approvals.services.factory import open_workflow_engine
from approvals.services.workflow_engine import WorkflowEngine
from approvals.settings import settings
from approvals.storage.db import close_database


async def sweep_with_engine(engine: WorkflowEngine, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Run one sweep with ``engine`` and summarize it.

    Args:
        engine (WorkflowEngine): Engine owning the store and directory
        now (Optional[datetime]): Sweep time (defaults to the engine clock)

    Returns:
        Dict[str, Any]: Sweep summary
    """
    scheduler = EscalationScheduler.from_settings(engine, engine.settings)
    result = await scheduler.sweep(now)

    if not result.ran:
        return {"status": "skipped", "scanned": 0, "escalated": []}
    return {
        "status": "success",
        "scanned": result.scanned,
        "escalated": result.escalated,
        "summary": f"Scanned {result.scanned} overdue steps, escalated {len(result.escalated)}",
    }


# ==== TASK DEFINITIONS ==== #


@task(retries=1, retry_delay_seconds=30)
async def escalate_overdue_steps(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Escalate every overdue pending step against the configured database.

    Args:
        now (Optional[datetime]): Sweep time override

    Returns:
        Dict[str, Any]: Sweep summary
    """
    logger = get_run_logger()

    engine = await open_workflow_engine(settings)
    try:
        summary = await sweep_with_engine(engine, now)
    finally:
        await engine.notifier.aclose()
        await close_database()

    logger.info(f"Escalation sweep {summary['status']}: {len(summary['escalated'])} steps escalated")
    return summary


# ==== FLOW DEFINITION ==== #


@flow(name=settings.PREFECT_FLOW_NAME, log_prints=True)
async def escalation_sweep_flow(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Scheduled escalation sweep.

    Args:
        now (Optional[datetime]): Sweep time override for backfills

    Returns:
        Dict[str, Any]: Sweep summary
    """
    logger = get_run_logger()
    flow_start_time = asyncio.get_running_loop().time()

    summary = await escalate_overdue_steps(now)

    summary["flow_duration_seconds"] = asyncio.get_running_loop().time() - flow_start_time
    logger.info(f"✅ Escalation sweep flow finished: {summary.get('summary', summary['status'])}")
    return summary


# ==== COMMAND LINE INTERFACE ==== #


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escalation sweep flow")
    parser.add_argument("--run", action="store_true", help="Run flow once locally")
    parser.add_argument("--serve", action="store_true", help="Serve flow on its cron schedule")

    args = parser.parse_args()

    if args.serve:
        print(f"Serving escalation sweep flow on '{settings.PREFECT_SCHEDULE_CRON}'...")
        escalation_sweep_flow.serve(
            name="escalation-sweep",
            tags=["approvals", "escalation"],
            cron=settings.PREFECT_SCHEDULE_CRON,
        )

    elif args.run:
        result = asyncio.run(escalation_sweep_flow())
        print(f"Flow completed: {result}")

    else:
        print("Usage: python flows/escalation_sweep_flow.py [--run|--serve]")
