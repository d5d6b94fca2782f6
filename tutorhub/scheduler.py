import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from tutorhub.config import settings
from tutorhub.db import session_scope
from tutorhub.metrics import run_timed_job
from tutorhub.services.auto_detection_job import run_auto_detection
from tutorhub.services.schedule_slot_service import send_due_class_reminders
from tutorhub.services.waitlist_service import expire_waitlist_entries


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)

WAITLIST_EXPIRY_INTERVAL_MINUTES = 15
CLASS_REMINDER_INTERVAL_MINUTES = 5


def _run_job(label: str, task: Callable[[Session], object]) -> None:
    def _with_db():
        with session_scope(f'job:{label}') as db:
            return task(db)

    try:
        run_timed_job(label, _with_db)
    except Exception:
        # run_timed_job already logged the traceback; keep the scheduler thread alive.
        logger.warning('scheduler_job_aborted name=%s', label)


def auto_detection_job():
    _run_job('auto_detection', run_auto_detection)


def waitlist_expiry_job():
    _run_job('waitlist_expiry', expire_waitlist_entries)


def class_reminders_job():
    _run_job('class_reminders', send_due_class_reminders)


def start_scheduler():
    scheduler.add_job(
        auto_detection_job,
        'interval',
        minutes=settings.auto_detection_interval_minutes,
        id='auto_detection',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        waitlist_expiry_job,
        'interval',
        minutes=WAITLIST_EXPIRY_INTERVAL_MINUTES,
        id='waitlist_expiry',
        coalesce=True,
        replace_existing=True,
    )
    scheduler.add_job(
        class_reminders_job,
        'interval',
        minutes=CLASS_REMINDER_INTERVAL_MINUTES,
        id='class_reminders',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    if not scheduler.running:
        scheduler.start()
        logger.info('scheduler_started jobs=%s', ','.join(job.id for job in scheduler.get_jobs()))


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
