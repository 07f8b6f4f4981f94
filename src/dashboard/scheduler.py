from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


def build_pending_drain_scheduler(interval_seconds: int, job_fn) -> AsyncIOScheduler:
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        job_fn,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id="drain_pending",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
