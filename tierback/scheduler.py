"""
APScheduler configuration for Tierback.

Runs the full backup-and-retention pipeline on BACKUP_SCHEDULE_CRON. At most
one run executes at a time; runs that pile up while one is active are
coalesced into a single pending run.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from tierback.config import ConfigurationError
from tierback.backup.executor import run_backups

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'backup_run'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance

    Returns:
        The scheduler (existing one if already initialized)
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Never overlap two runs
        'misfire_grace_time': 3600
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    cron = app.config['BACKUP_SCHEDULE_CRON']
    scheduler.add_job(
        func=_run_backups_wrapper,
        trigger=CronTrigger.from_crontab(cron, timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')),
        id=BACKUP_JOB_ID,
        name=f"Backup run ({cron})",
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

    if not scheduler.running:
        scheduler.start()
        logger.info("APScheduler started (state=%s)", scheduler.state)
        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info("  - %s: %s (next run: %s)", job.id, job.name, next_run)
    else:
        logger.info("Scheduler already running (state=%s)", scheduler.state)


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _run_backups_wrapper():
    """
    Execute one run inside the Flask app context.

    Errors are logged, never raised into the scheduler thread.
    """
    with flask_app.app_context():
        try:
            logger.info("Scheduler starting backup run")
            summary = run_backups(flask_app.config)
            logger.info("Backup run completed with %d error(s)", len(summary['errors']))
        except ConfigurationError as e:
            logger.error("Backup run not started, invalid configuration: %s", e)
        except Exception:
            logger.exception("Scheduled backup run failed")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running


def get_scheduler_diagnostics() -> dict:
    """
    Get scheduler state for troubleshooting.

    Returns:
        Dict with scheduler state and jobs
    """
    if scheduler is None:
        return {
            'initialized': False,
            'running': False,
            'state': 'NOT_INITIALIZED',
            'note': 'Scheduler not started in this process'
        }

    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'jobs': get_scheduled_jobs()
    }
