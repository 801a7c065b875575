"""APScheduler — runs a dispatcher pass on a fixed interval."""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from membermail.services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


async def dispatch_due_step_runs(dispatcher: Dispatcher) -> dict | None:
    """One dispatcher pass, off the event loop."""
    try:
        return await asyncio.to_thread(dispatcher.run_pass)
    except Exception:
        logger.exception("Dispatch pass failed")
        return None


def build_scheduler(dispatcher: Dispatcher, interval_seconds: int) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        dispatch_due_step_runs,
        "interval",
        seconds=interval_seconds,
        id="dispatch_step_runs",
        args=[dispatcher],
        max_instances=1,
        coalesce=True,
    )
    return scheduler
