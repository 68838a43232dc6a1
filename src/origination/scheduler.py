from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

SWEEP_JOB_ID = "offer_expiration_sweep"


def build_expiration_sweep_scheduler(interval_minutes: int, job_fn) -> AsyncIOScheduler:
    if interval_minutes <= 0:
        raise ValueError("Sweep interval must be a positive number of minutes")
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        job_fn,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler
