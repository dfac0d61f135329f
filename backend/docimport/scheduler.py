"""
Background Scheduler - stale import sweep

Runs periodically with APScheduler:
    1. Finalize processing jobs whose completion was signalled more than
       completion_grace_seconds ago but whose remaining sections never arrived
       (missing sections count as failed, job ends partially_completed)
    2. Fail in-flight jobs with no activity for processing_timeout_minutes
       (error code "timeout"), so no job stays pending or processing forever
    3. Delete staged uploads of jobs that are past the hand-off (the
       extraction service already has the document, or the job is finished)

Default Schedule: every 60 seconds (configurable via SWEEP_INTERVAL_SECONDS)
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from docimport.config import get_settings
from docimport.database import async_session
from docimport.services import job_store
from docimport.services.job_manager import ERROR_TIMEOUT, ImportJobManager, get_job_manager, remove_upload

logger = logging.getLogger(__name__)

settings = get_settings()
scheduler = AsyncIOScheduler()


async def sweep_stale_imports(
    session_factory: async_sessionmaker = async_session,
    manager: Optional[ImportJobManager] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Finalize or fail imports the extraction service has stopped talking about.

    Returns:
        Dict with counts of finalized and timed out jobs and removed uploads
    """
    manager = manager or get_job_manager()
    now = now or job_store.utcnow()
    stats = {"finalized": 0, "timed_out": 0, "uploads_removed": 0}

    async with session_factory() as db:
        grace_cutoff = now - timedelta(seconds=settings.completion_grace_seconds)
        for job_id in await job_store.find_overdue_completions(db, grace_cutoff):
            try:
                outcome = await manager.finalize_incomplete(db, job_id)
            except Exception as e:
                await db.rollback()
                logger.error(f"Could not finalize import {job_id}: {e}")
                continue
            if outcome.accepted:
                stats["finalized"] += 1
                logger.info(f"Import {job_id} finalized after completion grace period ({outcome.job.state})")

        timeout_cutoff = now - timedelta(minutes=settings.processing_timeout_minutes)
        for job_id in await job_store.find_stale_jobs(db, timeout_cutoff):
            try:
                outcome = await manager.on_failure(
                    db,
                    job_id,
                    ERROR_TIMEOUT,
                    f"No response from extraction service for {settings.processing_timeout_minutes} minutes",
                )
            except Exception as e:
                await db.rollback()
                logger.error(f"Could not time out import {job_id}: {e}")
                continue
            if outcome.accepted:
                stats["timed_out"] += 1

        for job_id, upload_path in await job_store.find_spent_uploads(db):
            remove_upload(upload_path)
            await job_store.forget_upload(db, job_id)
            stats["uploads_removed"] += 1
        await db.commit()

    if any(stats.values()):
        logger.info(
            f"Stale import sweep: {stats['finalized']} finalized, {stats['timed_out']} timed out, "
            f"{stats['uploads_removed']} upload(s) removed"
        )
    return stats


def start_scheduler():
    """Start the background scheduler"""
    scheduler.add_job(
        sweep_stale_imports,
        trigger=IntervalTrigger(seconds=settings.sweep_interval_seconds),
        id="sweep_stale_imports",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started: sweeping stale imports every {settings.sweep_interval_seconds} seconds")


def stop_scheduler():
    """Stop the background scheduler"""
    if scheduler.running:
        scheduler.shutdown()
