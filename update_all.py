#!/usr/bin/env python3
"""
System Update Orchestrator
Backs up the system with Timeshift, then updates APT (or Nala), Snap,
Flatpak and firmware packages in a fixed order. Must run as root.

Environment Variables:
    UPDATE_CONFIG    - Path to update.yaml (default: update.yaml beside this script)
    UPDATE_LOG_DIR   - Log directory (default: ~/linux-scripts/script_logs)
    UPDATE_LOG_LEVEL - Logging level (default: INFO)
    UPDATE_PID_FILE  - Run lock file (default: <log dir>/update.pid)
"""
import logging
import signal
import sys
from contextlib import contextmanager
from datetime import datetime

import yaml

from update_core import (
    LOGS_DIR, LOG_LEVEL, LOG_SUFFIX, NOTICE, SUCCESS, OUTCOME_COLORS,
    ColorFormatter, FatalUpdateError, StepOutcome,
    acquire_run_lock, classify_result, ensure_log_dir, load_settings,
    release_run_lock, run_command,
)
from preflight import check_disk_space, check_network, check_root, resolve_tools

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Messages for each step: (changed, no change)
STEP_MESSAGES = {
    "update": ("Package list updated successfully.",
               "No Change: Package list is already up to date."),
    "upgrade": ("Packages upgraded successfully.",
                "No Change: No packages needed upgrading."),
    "full_upgrade": ("Full upgrade completed.",
                     "No Change: Full upgrade had nothing to do."),
    "autoremove": ("Unnecessary packages removed.",
                   "No Change: No unnecessary packages to remove."),
    "autoclean": ("Package cache cleaned.",
                  "No Change: Package cache is already clean."),
    "snap": ("Snap packages updated successfully.",
             "No Change: All Snap packages are up to date."),
    "flatpak": ("Flatpak packages updated successfully.",
                "No Change: All Flatpak packages are up to date."),
    "firmware": ("Firmware updated successfully.",
                 "No Change: No firmware updates available."),
}


class UpdateInterrupted(BaseException):
    """Raised from the signal handler when SIGINT or SIGTERM arrives."""


# Configure logging for one run
def setup_logging(log_dir=None, console_color=True, file_color=True):
    """
    Configure console and per-run log file handlers.

    Returns:
        Path: The new log file
    """
    log_dir = ensure_log_dir(log_dir or LOGS_DIR)
    log_file = log_dir / f"{datetime.now().strftime('%Y%m%d_%H%M%S')}{LOG_SUFFIX}"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setFormatter(ColorFormatter(LOG_FORMAT, LOG_DATEFMT, use_color=file_color))
    root_logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColorFormatter(LOG_FORMAT, LOG_DATEFMT, use_color=console_color))
    root_logger.addHandler(console_handler)

    return log_file


def teardown_logging():
    """Flush and detach the handlers installed by setup_logging."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if isinstance(handler.formatter, ColorFormatter):
            root_logger.removeHandler(handler)
            handler.close()


@contextmanager
def handle_interrupts(signals=(signal.SIGINT, signal.SIGTERM)):
    """
    Turn the first SIGINT/SIGTERM into UpdateInterrupted.

    Later signals are ignored so the interruption is reported once.
    Previous handlers are restored on exit.
    """
    state = {"interrupted": False}

    def _handler(signum, frame):
        if state["interrupted"]:
            return
        state["interrupted"] = True
        raise UpdateInterrupted(signal.Signals(signum).name)

    previous = {sig: signal.signal(sig, _handler) for sig in signals}
    try:
        yield state
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def report(step, outcome):
    """Log the classified outcome of a step."""
    changed_msg, unchanged_msg = STEP_MESSAGES[step]
    color = {"color": OUTCOME_COLORS[outcome]}
    if outcome is StepOutcome.NO_CHANGE:
        logger.info(unchanged_msg, extra=color)
    elif outcome is StepOutcome.CHANGED:
        logger.info(changed_msg, extra=color)
    else:
        logger.warning(f"Step '{step}' failed; continuing.", extra=color)
    return outcome


def run_step(config, step, args):
    """Run one update command, then classify and log its outcome."""
    result = run_command(args)
    if result['error']:
        logger.debug(f"{' '.join(args)}: {result['error']}")
    outcome = classify_result(result, config.markers_for(step), config.strict_exit_codes)
    return report(step, outcome)


# =============================================================================
# Update Steps
# =============================================================================

def create_backup(config):
    """Take a Timeshift snapshot before mutating the system."""
    if not config.backup_enabled:
        logger.info("Backup disabled, skipping Timeshift snapshot.", extra=NOTICE)
        return None

    logger.info("Creating a Timeshift backup...", extra=NOTICE)
    result = run_command([config.timeshift_cmd, "--create", "--comments", config.backup_comment])
    if result['success']:
        return True

    message = f"Timeshift backup failed: {result['error']}"
    if config.backup_required:
        raise FatalUpdateError(message)
    logger.error(message)
    return False


def update_apt_packages(config):
    """Refresh the package list, upgrade, full-upgrade, autoremove and autoclean."""
    apt = config.apt_cmd
    outcomes = {}

    logger.info(f"Updating package list with {apt}...", extra=NOTICE)
    outcomes["update"] = run_step(config, "update", [apt, "update"])

    logger.info(f"Upgrading packages with {apt}...", extra=NOTICE)
    outcomes["upgrade"] = run_step(config, "upgrade", [apt, "upgrade", "-y"])

    logger.info("Performing full upgrade...", extra=NOTICE)
    outcomes["full_upgrade"] = run_step(config, "full_upgrade", [apt, "full-upgrade", "-y"])

    logger.info("Removing unnecessary packages...", extra=NOTICE)
    outcomes["autoremove"] = run_step(config, "autoremove", [apt, "autoremove", "-y"])

    # autoclean only under apt-get
    if config.uses_apt_get:
        logger.info("Cleaning up .deb files of packages that are no longer installed...",
                    extra=NOTICE)
        outcomes["autoclean"] = run_step(config, "autoclean", [apt, "autoclean", "-y"])

    return outcomes


def refresh_snaps(config):
    logger.info("Refreshing Snap packages...", extra=NOTICE)
    return run_step(config, "snap", [config.snap_cmd, "refresh"])


def update_flatpaks(config):
    if not config.flatpak_available:
        logger.info("Flatpak is not installed, skipping Flatpak updates.", extra=NOTICE)
        return None

    logger.info("Updating Flatpak packages...", extra=NOTICE)
    return run_step(config, "flatpak", [config.flatpak_cmd, "update", "-y"])


def update_firmware(config):
    """Refresh firmware metadata and apply updates when any are detected."""
    fwupd = config.fwupd_cmd
    logger.info("Updating system firmware...", extra=NOTICE)

    # "Metadata is up to date" exits non-zero
    run_command([fwupd, "refresh"])

    result = run_command([fwupd, "get-updates"])
    outcome = classify_result(result, config.markers_for("firmware"), config.strict_exit_codes)
    if outcome is StepOutcome.CHANGED:
        applied = run_command([fwupd, "update"])
        if config.strict_exit_codes and not applied['success']:
            outcome = StepOutcome.FAILED
    return report("firmware", outcome)


def run_update(settings):
    """
    Run preflight checks and the full update sequence.

    Raises:
        FatalUpdateError: If any gate fails
    """
    check_root()
    acquire_run_lock()
    try:
        config = resolve_tools(settings)
        create_backup(config)
        check_network(config)
        check_disk_space(config)

        update_apt_packages(config)
        refresh_snaps(config)
        update_flatpaks(config)
        update_firmware(config)
    finally:
        release_run_lock()

    logger.info("System update completed successfully.", extra=SUCCESS)


def run_guarded(settings):
    """Run the update and map failures to an exit code."""
    try:
        run_update(settings)
        return 0
    except FatalUpdateError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        return 1


def logging_configured():
    """True once setup_logging has attached its handlers."""
    return any(isinstance(handler.formatter, ColorFormatter)
               for handler in logging.getLogger().handlers)


def main(config_path=None, log_dir=None):
    """
    Entry point: returns the process exit code.
    """
    try:
        with handle_interrupts():
            try:
                try:
                    settings = load_settings(config_path)
                except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
                    setup_logging(log_dir)
                    logger.error(f"Configuration error: {e}")
                    return 1

                color = settings["color"]
                log_file = setup_logging(log_dir, color["console"], color["log_file"])
                logger.debug(f"Logging to {log_file}")

                return run_guarded(settings)
            except UpdateInterrupted:
                if not logging_configured():
                    setup_logging(log_dir)
                logger.error("Script interrupted.")
                return 1
    finally:
        teardown_logging()


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
