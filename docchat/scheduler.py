"""Periodic crawl-queue ticks on APScheduler.

Two interval jobs run on the application's event loop:
- ``queue_tick``: docchat.crawl_queue.process_queue every QUEUE_TICK_SECONDS
- ``queue_cleanup``: purge finished queue items every QUEUE_CLEANUP_INTERVAL_SECONDS

Both use max_instances=1 and coalesce=True so a slow tick is never overlapped
by the next one and missed runs collapse into a single run.
"""
import asyncio
import logging
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from docchat.config import settings
from docchat.crawl_queue import process_queue, run_cleanup

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def _queue_tick() -> None:
    result = await process_queue()
    if result.action not in ("idle", "busy"):
        logger.info("Queue tick: %s %s", result.action, result.queue_id or "")


async def _queue_cleanup() -> None:
    await asyncio.to_thread(run_cleanup)


def _job_error(event) -> None:
    logger.error("Scheduled job %s failed: %s", event.job_id, event.exception)


def _job_executed(event) -> None:
    logger.debug("Scheduled job %s executed", event.job_id)


def start_scheduler() -> AsyncIOScheduler:
    """Start the queue scheduler on the running event loop (idempotent)."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        return _scheduler
    scheduler = AsyncIOScheduler(
        executors={"default": AsyncIOExecutor()},
        job_defaults={"coalesce": True, "max_instances": 1},
    )
    scheduler.add_job(_queue_tick, "interval", seconds=settings.QUEUE_TICK_SECONDS, id="queue_tick")
    scheduler.add_job(
        _queue_cleanup, "interval", seconds=settings.QUEUE_CLEANUP_INTERVAL_SECONDS, id="queue_cleanup"
    )
    scheduler.add_listener(_job_executed, EVENT_JOB_EXECUTED)
    scheduler.add_listener(_job_error, EVENT_JOB_ERROR)
    scheduler.start()
    _scheduler = scheduler
    logger.info(
        "Queue scheduler started (tick=%ss, cleanup=%ss)",
        settings.QUEUE_TICK_SECONDS,
        settings.QUEUE_CLEANUP_INTERVAL_SECONDS,
    )
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Queue scheduler stopped")
    _scheduler = None
