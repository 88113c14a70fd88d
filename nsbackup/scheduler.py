"""
APScheduler configuration for scheduled backups.

Manages:
- The recurring backup job (cron expression from BACKUP_SCHEDULE_CRON)
- Scheduler status for the status endpoint
"""

import logging

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from nsbackup.backup.results import BackupOptions
from nsbackup.services import get_backup_service


logger = logging.getLogger(__name__)

SCHEDULED_BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
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
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    cron = app.config.get('BACKUP_SCHEDULE_CRON')
    if cron:
        scheduler.add_job(
            func=run_scheduled_backup,
            trigger=CronTrigger.from_crontab(cron, timezone='UTC'),
            id=SCHEDULED_BACKUP_JOB_ID,
            name='Scheduled database backup',
            replace_existing=True
        )
        logger.info(f"Scheduled backups enabled ({cron})")
    else:
        logger.info("BACKUP_SCHEDULE_CRON not set, scheduled backups disabled")

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
        logger.info(f"APScheduler started (state={scheduler.state})")
        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def run_scheduled_backup():
    """
    Run a scheduled backup in the scheduler's worker thread.

    Returns:
        BackupResult of the run
    """
    with flask_app.app_context():
        service = get_backup_service(flask_app)
        options = BackupOptions(
            create_thread=flask_app.config.get('SCHEDULED_CREATE_THREAD', False),
            is_manual=False
        )

        logger.info("Scheduler starting backup")
        result = service.perform_backup(options)

        if result.success:
            logger.info(
                f"Scheduled backup completed: {result.total_documents_processed} documents "
                f"from {len(result.collections_processed)} collections"
            )
        else:
            logger.error(f"Scheduled backup failed: {result.error}")

        return result


def get_next_run_time():
    """Next scheduled backup as ISO string, or None."""
    if scheduler is None:
        return None

    job = scheduler.get_job(SCHEDULED_BACKUP_JOB_ID)
    if job is None or job.next_run_time is None:
        return None
    return job.next_run_time.isoformat()


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
