"""
APScheduler configuration for unattended backups.

Runs the backup pipeline on a cron schedule in the foreground. At most one
run is active at a time; missed runs are coalesced into one.
"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from cloudkeeper.config import Config, load_settings
from cloudkeeper.backup.executor import run_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'cloudkeeper_backup'


def create_scheduler(
    cron: str,
    settings_file: str,
    work_dir: str = '.',
    timezone: str = Config.SCHEDULER_TIMEZONE,
    runner: Optional[Callable[[str, str], None]] = None
) -> BlockingScheduler:
    """
    Create a scheduler with the backup job registered.

    Args:
        cron: Crontab expression, e.g. '0 2 * * *'
        settings_file: Settings file, re-read on every run
        work_dir: Directory for the temporary archive
        timezone: Timezone the cron expression is evaluated in
        runner: Job function (default: _execute_backup_wrapper)

    Returns:
        Configured, not yet started, BlockingScheduler

    Raises:
        ValueError: If the cron expression is invalid
    """
    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one backup at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults, timezone=timezone)

    trigger = CronTrigger.from_crontab(cron, timezone=timezone)

    scheduler.add_job(
        func=runner or _execute_backup_wrapper,
        args=[settings_file, work_dir],
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name=f"Backup ({cron})",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job ({cron}, {timezone})")
    return scheduler


def _execute_backup_wrapper(settings_file: str, work_dir: str):
    """
    Run one scheduled backup.

    Failures are logged so the next scheduled run still happens.
    """
    logger.info("Scheduler executing backup")
    try:
        settings = load_settings(settings_file)
        result = run_backup(settings, work_dir=work_dir)
    except Exception:
        logger.exception("Scheduled backup failed")
        return

    if result.eviction_error:
        logger.error(f"Scheduled backup stored, but retention failed: {result.eviction_error}")
    else:
        logger.info(f"Scheduled backup completed: {result.archive_name}")


def run_scheduler(scheduler: BlockingScheduler):
    """Start the scheduler and block until interrupted."""
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
