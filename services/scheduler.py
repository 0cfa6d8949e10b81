"""
services/scheduler.py
---------------------
Registers the periodic billing batch on the bot's JobQueue.

The JobQueue is APScheduler underneath; ``max_instances=1`` with
``coalesce=True`` means a tick that arrives while a batch is still
running is dropped instead of starting a second batch.
"""

import asyncio

from telegram.ext import ContextTypes, Job, JobQueue

from services.batch_orchestrator import BatchOrchestrator
from utils.logger import get_logger

logger = get_logger(__name__)

JOB_NAME = "billing_batch"


async def run_billing_batch(context: ContextTypes.DEFAULT_TYPE) -> None:
    """
    Scheduled job: run one billing batch in a worker thread.
    The orchestrator is carried in ``job.data``.
    """
    orchestrator: BatchOrchestrator = context.job.data
    try:
        await asyncio.to_thread(orchestrator.run_batch)
    except Exception:
        logger.exception("Billing batch job failed")


def schedule_billing(job_queue: JobQueue, orchestrator: BatchOrchestrator,
                     interval_seconds: int) -> Job:
    """
    Run ``orchestrator.run_batch`` every ``interval_seconds``.

    Args:
        job_queue: The application's JobQueue.
        orchestrator: Batch runner passed to the job as its data.
        interval_seconds: Period between batch starts.

    Returns:
        The scheduled Job.
    """
    job = job_queue.run_repeating(
        run_billing_batch,
        interval=interval_seconds,
        first=1,
        data=orchestrator,
        name=JOB_NAME,
        job_kwargs={"max_instances": 1, "coalesce": True},
    )
    logger.info(f"Scheduled billing batch every {interval_seconds}s")
    return job
