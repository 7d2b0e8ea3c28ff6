"""
APScheduler configuration and job scheduling for backvault.

Manages:
- Scheduled backup runs (based on each target's cron expression)
- Daily retention policy enforcement
- Hand-off of manually triggered runs
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from backvault.backup.errors import BackupAlreadyRunning, BackupError
from backvault.models import BackupTarget

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Backups are executed on a single scheduler thread, so timer and manual
    triggers never run two backups at once in this process.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )
    scheduler.add_listener(_run_job_listener, EVENT_JOB_MISSED | EVENT_JOB_ERROR)

    # Retention sweep (runs daily at 2 AM)
    scheduler.add_job(
        func=_retention_wrapper,
        trigger=CronTrigger(hour=2, minute=0),
        id='retention_cleanup',
        name='Daily Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")
    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def sync_backup_targets(clear_queued_runs: bool = False):
    """
    Synchronize backup targets from database to scheduler.

    This function should be called:
    - After app startup (with clear_queued_runs=True)
    - After creating/updating/deleting backup targets

    Args:
        clear_queued_runs: Drop one-off run jobs persisted by a previous
            process; their runs were aborted by the startup reconciliation
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if clear_queued_runs:
        for job in scheduler.get_jobs():
            if job.id.startswith('run_'):
                _remove_job(job.id)

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for target in BackupTarget.query.all():
        job_id = f"backup_{target.id}"

        if target.enabled and target.schedule_cron:
            try:
                trigger = CronTrigger.from_crontab(target.schedule_cron, timezone='UTC')
            except ValueError as e:
                logger.error(f"Invalid schedule for target {target.name}: {e}")
                continue

            scheduler.add_job(
                func=_scheduled_backup_wrapper,
                args=[target.id],
                trigger=trigger,
                id=job_id,
                name=f"Backup: {target.name}",
                replace_existing=True
            )
            scheduled_job_ids.discard(job_id)
            logger.info(f"Scheduled backup target: {target.name} ({target.schedule_cron})")

    # Remove jobs of targets that are gone, disabled or unscheduled
    for leftover_id in scheduled_job_ids:
        _remove_job(leftover_id)


def _remove_job(job_id: str):
    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled job: {job_id}")
    except JobLookupError:
        pass


def schedule_run(run_id: str):
    """
    Hand a pending run to the scheduler thread.

    Args:
        run_id: Run created by trigger_backup()
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduler.add_job(
        func=_execute_run_wrapper,
        args=[run_id],
        trigger=DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=1)),
        id=f"run_{run_id}",
        name=f"Run: {run_id}",
        replace_existing=False,
        # Runs queued behind a long backup must still start
        misfire_grace_time=None,
        coalesce=False
    )
    logger.info(f"Queued backup run {run_id}")


def _scheduled_backup_wrapper(target_id: int):
    """Run a target's scheduled backup inside the application context."""
    from backvault.api import run_scheduled_backup

    with flask_app.app_context():
        try:
            run = run_scheduled_backup(target_id)
            if run is not None:
                logger.info(f"Scheduled backup of target {target_id} finished: {run.status}")
        except BackupAlreadyRunning as e:
            logger.warning(f"Skipping scheduled backup of target {target_id}: {e}")
        except BackupError as e:
            logger.error(f"Scheduled backup of target {target_id} failed: {e}")


def _execute_run_wrapper(run_id: str):
    """Execute a manually triggered run inside the application context."""
    from backvault.api import execute_run

    with flask_app.app_context():
        try:
            run = execute_run(run_id)
            logger.info(f"Backup run {run_id} finished: {run.status}")
        except BackupError as e:
            logger.error(f"Backup run {run_id} failed: {e}")


def _run_job_listener(event):
    """Fail a queued run whose job was missed or crashed, releasing its lock."""
    if not event.job_id.startswith('run_'):
        return

    from backvault.api import fail_queued_run

    run_id = event.job_id[len('run_'):]
    if event.code == EVENT_JOB_MISSED:
        reason = f"Run was not started in time (due {event.scheduled_run_time})"
    else:
        reason = f"Run job crashed: {event.exception}"

    with flask_app.app_context():
        fail_queued_run(run_id, reason)


def _retention_wrapper():
    from backvault.backup.retention import enforce_retention_policies

    with flask_app.app_context():
        enforce_retention_policies()
