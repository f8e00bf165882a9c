#!/usr/bin/env python3
"""
Unattended Update Scheduler
Runs update_all.py on the schedule defined in update.yaml.

Environment Variables:
    UPDATE_CONFIG              - Path to update.yaml (default: update.yaml)
    UPDATE_LOG_DIR             - Log directory (default: ~/linux-scripts/script_logs)
    UPDATE_LOG_LEVEL           - Logging level (default: INFO)
    UPDATE_SCHEDULER_LOG_SIZE  - Max log file size in MB (default: 10)
    UPDATE_SCHEDULER_LOG_COUNT - Number of backup log files (default: 5)
"""
import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler

import schedule

from update_core import (
    LOGS_DIR, LOG_LEVEL, UPDATE_SCRIPT,
    ensure_log_dir, is_running, load_settings, run_command,
)

LOG_MAX_SIZE_MB = int(os.environ.get("UPDATE_SCHEDULER_LOG_SIZE", "10"))
LOG_BACKUP_COUNT = int(os.environ.get("UPDATE_SCHEDULER_LOG_COUNT", "5"))

logger = logging.getLogger(__name__)


# Configure logging with rotation
def setup_logging(log_dir=None):
    """Configure logging with rotating file handler."""
    log_formatter = logging.Formatter(
        '%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    file_handler = RotatingFileHandler(
        ensure_log_dir(log_dir or LOGS_DIR) / "update_scheduler.log",
        maxBytes=LOG_MAX_SIZE_MB * 1024 * 1024,
        backupCount=LOG_BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    root_logger.addHandler(console_handler)


def run_scheduled_update(command=None):
    """Run one update in a child process and log its exit status."""
    if is_running():
        logger.warning("An update is already running, skipping this slot")
        return None

    command = command or [sys.executable, str(UPDATE_SCRIPT)]
    logger.info(f"Starting scheduled update: {' '.join(command)}")
    result = run_command(command, stream=False)

    if result['success']:
        logger.info("Scheduled update completed successfully")
    else:
        logger.error(f"Scheduled update failed: {result['error']}")
        if result['stderr']:
            logger.error(f"Update stderr: {result['stderr']}")
    return result['success']


def describe_schedule(sched):
    """Format the schedule section as a human-readable string."""
    s = f"Every {sched['every']} {sched['unit']}"
    if sched.get("day"):
        s += f" on {sched['day']}"
    if sched.get("at"):
        s += f" at {sched['at']}"
    return s


def schedule_update(sched, scheduler=None, command=None):
    """
    Register the update job on a schedule.Scheduler.

    Args:
        sched: Normalized 'schedule' settings section
        scheduler: Scheduler to register on (module default if None)
        command: Command to run (update_all.py if None)

    Returns:
        schedule.Job: The registered job
    """
    scheduler = scheduler or schedule.default_scheduler
    unit = sched["unit"]
    day = sched.get("day")
    at = sched.get("at")

    job = getattr(scheduler.every(sched["every"]), unit)

    if unit == "weeks" and day:
        job = getattr(job, day.lower())
    if at:
        job = job.at(at)

    logger.info(f"Scheduled update: {describe_schedule(sched)}")
    return job.do(run_scheduled_update, command)


def cli():
    """Run the scheduler loop until interrupted."""
    setup_logging()
    logger.info("="*60)
    logger.info("Starting Update Scheduler")
    logger.info("="*60)
    logger.info(f"Log directory: {LOGS_DIR}")
    logger.info(f"Log rotation: {LOG_MAX_SIZE_MB}MB x {LOG_BACKUP_COUNT} files")

    try:
        settings = load_settings()
        job = schedule_update(settings["schedule"])
        logger.info(f"Next run: {job.next_run}")
        logger.info("Press Ctrl+C to stop the scheduler")

        while True:
            schedule.run_pending()
            time.sleep(1)

    except KeyboardInterrupt:
        logger.info("Scheduler stopped by user")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
