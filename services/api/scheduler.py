"""Scheduler for the periodic mailbox sync."""
import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from shared import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None
_is_running = False
_lock = threading.Lock()


def run_sync_job() -> Optional[dict]:
    """Run one sync unless the previous run is still going."""
    global _is_running

    with _lock:
        if _is_running:
            logger.warning("⏸️  Previous mailbox sync still running, skipping this cycle")
            return None
        _is_running = True

    try:
        logger.info("🔁 Scheduled mailbox sync started")
        # Import here to avoid circular imports
        from services.api.sync_inbox import sync_all_accounts
        result = sync_all_accounts()
        logger.info(
            f"✔ Mailbox sync completed: processed={result.get('total_processed', 0)}, "
            f"duplicates={result.get('total_duplicates', 0)}, errors={result.get('total_errors', 0)}"
        )
        return result
    except Exception as e:
        logger.error(f"❌ Mailbox sync failed: {e}", exc_info=True)
        return None
    finally:
        with _lock:
            _is_running = False


def start_scheduler():
    """Start the background scheduler for mailbox sync."""
    global _scheduler

    if _scheduler and _scheduler.running:
        logger.warning("Scheduler already running")
        return

    interval_minutes = settings.sync_interval_minutes
    logger.info(f"🚀 Starting mailbox sync scheduler (interval: {interval_minutes} minutes)")

    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        run_sync_job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id='mailbox_sync',
        name='Mailbox Sync Job',
        replace_existing=True
    )

    _scheduler.start()
    logger.info(f"✅ Scheduler started successfully. Will run every {interval_minutes} minutes.")


def stop_scheduler():
    """Stop the background scheduler."""
    if _scheduler and _scheduler.running:
        _scheduler.shutdown()
        logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Get scheduler status."""
    if not _scheduler or not _scheduler.running:
        return {"status": "stopped", "interval_minutes": settings.sync_interval_minutes}

    jobs = _scheduler.get_jobs()
    next_run = jobs[0].next_run_time if jobs else None

    return {
        "status": "running",
        "interval_minutes": settings.sync_interval_minutes,
        "next_run": next_run.isoformat() if next_run else None,
        "is_running": _is_running
    }
