"""
APScheduler Configuration

Scheduled jobs:
- pending_ticket_reminders: daily chat reminder to assignees of open work
- due_date_reminders: daily chat reminder to assignees of tickets due soon or overdue
- old_open_ticket_reminders: daily chat reminder to L2/L3 approvers of tickets left open

Jobs open their own database session from the session factory handed to
start_scheduler by the application lifespan.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.config import Settings

logger = logging.getLogger(__name__)

job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 300,
}


def create_scheduler(timezone: str) -> AsyncIOScheduler:
    return AsyncIOScheduler(
        jobstores={'default': MemoryJobStore()},
        executors={'default': AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone=timezone,
    )


async def _run_job(job_id: str, job_func, session_factory, notifier):
    try:
        async with session_factory() as session:
            result = await job_func(session, notifier)
        logger.info(f"Job '{job_id}' completed: {result['messages_sent']} messages sent")
    except Exception as e:
        logger.error(f"Job '{job_id}' failed: {e}")


async def run_pending_ticket_reminders(session_factory, notifier):
    """Wrapper called by APScheduler."""
    from app.jobs.pending_ticket_reminders import run_pending_ticket_reminders_job
    await _run_job('pending_ticket_reminders', run_pending_ticket_reminders_job, session_factory, notifier)


async def run_due_date_reminders(session_factory, notifier):
    """Wrapper called by APScheduler."""
    from app.jobs.due_date_reminders import run_due_date_reminders_job
    await _run_job('due_date_reminders', run_due_date_reminders_job, session_factory, notifier)


async def run_old_open_ticket_reminders(session_factory, notifier):
    """Wrapper called by APScheduler."""
    from app.jobs.old_open_ticket_reminders import run_old_open_ticket_reminders_job
    await _run_job('old_open_ticket_reminders', run_old_open_ticket_reminders_job, session_factory, notifier)


def start_scheduler(settings: Settings, session_factory, notifier) -> Optional[AsyncIOScheduler]:
    """Create and start the scheduler. Returns None when every reminder is disabled."""
    jobs = [
        (settings.PENDING_REMINDER_ENABLED, run_pending_ticket_reminders,
         settings.PENDING_REMINDER_HOUR, 'pending_ticket_reminders', 'Pending Ticket Reminders'),
        (settings.DUE_DATE_REMINDER_ENABLED, run_due_date_reminders,
         settings.DUE_DATE_REMINDER_HOUR, 'due_date_reminders', 'Due Date Reminders'),
        (settings.OLD_OPEN_REMINDER_ENABLED, run_old_open_ticket_reminders,
         settings.OLD_OPEN_REMINDER_HOUR, 'old_open_ticket_reminders', 'Old Open Ticket Reminders'),
    ]
    enabled = [job for job in jobs if job[0]]
    if not enabled:
        logger.info("Ticket reminders disabled; scheduler not started")
        return None

    scheduler = create_scheduler(settings.SCHEDULER_TIMEZONE)
    for _, func, hour, job_id, name in enabled:
        scheduler.add_job(
            func,
            'cron',
            hour=hour,
            minute=0,
            args=[session_factory, notifier],
            id=job_id,
            name=name,
            replace_existing=True,
        )
    scheduler.start()
    logger.info("Background job scheduler started")

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled job: {job.name} - Next run: {job.next_run_time}")
    return scheduler


def shutdown_scheduler(scheduler: Optional[AsyncIOScheduler]):
    """Shutdown the scheduler gracefully."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")


def get_job_status(scheduler: Optional[AsyncIOScheduler]):
    """Get status of all scheduled jobs."""
    if scheduler is None:
        return []
    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run_time': str(job.next_run_time) if job.next_run_time else None,
            'trigger': str(job.trigger),
        }
        for job in scheduler.get_jobs()
    ]
