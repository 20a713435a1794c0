"""
Background Jobs Module

- BackgroundJobQueue: post-commit notification and work order sync jobs
- APScheduler: daily pending, due-date and old open ticket reminders
"""

from app.jobs.background import BackgroundJobQueue
from app.jobs.scheduler import start_scheduler, shutdown_scheduler

__all__ = [
    "BackgroundJobQueue",
    "start_scheduler",
    "shutdown_scheduler",
]
