"""
Update Core Module (update_core.py)

Shared functionality for the update orchestrator, scheduler and control script.
This module provides reusable functions without running an update itself.
"""
import enum
import logging
import os
import pwd
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

import psutil

from validate_config import validate_config, normalize_config

logger = logging.getLogger(__name__)


def invoking_user_home():
    """Home directory of the user who invoked sudo, or of the current user."""
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        try:
            return Path(pwd.getpwnam(sudo_user).pw_dir)
        except KeyError:
            logger.debug(f"Unknown SUDO_USER '{sudo_user}', using current home")
    return Path.home()


# Directory paths
BASE_DIR = Path(__file__).parent
UPDATE_SCRIPT = BASE_DIR / "update_all.py"
CONFIG_FILE = Path(os.environ.get("UPDATE_CONFIG", BASE_DIR / "update.yaml"))
LOGS_DIR = Path(os.environ.get("UPDATE_LOG_DIR",
                               invoking_user_home() / "linux-scripts" / "script_logs"))
PID_FILE = Path(os.environ.get("UPDATE_PID_FILE", LOGS_DIR / "update.pid"))
LOG_LEVEL = os.environ.get("UPDATE_LOG_LEVEL", "INFO").upper()
LOG_SUFFIX = "_update.log"

# Terminal colors
GREEN = "\033[0;32m"
YELLOW = "\033[0;33m"
RED = "\033[0;31m"
BLUE = "\033[0;34m"
NC = "\033[0m"

# Log record extras for colored status lines
NOTICE = {"color": YELLOW}
SUCCESS = {"color": GREEN}
UNCHANGED = {"color": BLUE}
PLAIN = {"color": ""}


class FatalUpdateError(Exception):
    """A precondition failed; the run must abort with exit code 1."""


class StepOutcome(enum.Enum):
    CHANGED = "changed"
    NO_CHANGE = "no change"
    FAILED = "failed"


OUTCOME_COLORS = {
    StepOutcome.CHANGED: GREEN,
    StepOutcome.NO_CHANGE: BLUE,
    StepOutcome.FAILED: RED,
}


# =============================================================================
# Configuration
# =============================================================================

def load_settings(config_path=None):
    """
    Load and validate update settings.

    Args:
        config_path: Path to update.yaml (uses CONFIG_FILE if None)

    Returns:
        dict: Settings with defaults applied. The default config file is
        optional; an explicitly given one must exist.
    """
    if config_path is not None:
        return validate_config(config_path)

    if CONFIG_FILE.exists():
        return validate_config(CONFIG_FILE)
    return normalize_config({})


@dataclass(frozen=True)
class UpdateConfig:
    """Tool names and behavior resolved once during preflight."""

    apt_cmd: str
    timeshift_cmd: str = "timeshift"
    snap_cmd: str = "snap"
    flatpak_cmd: str = "flatpak"
    fwupd_cmd: str = "fwupdmgr"
    flatpak_available: bool = False
    backup_enabled: bool = True
    backup_required: bool = False
    backup_comment: str = "Backup before system update"
    network_host: str = "google.com"
    network_timeout: int = 10
    disk_path: str = "/"
    min_free_kib: int = 2097152
    strict_exit_codes: bool = False
    markers: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    @property
    def uses_apt_get(self):
        return Path(self.apt_cmd).name == "apt-get"

    def markers_for(self, step):
        return self.markers.get(step, ())


def build_config(settings, apt_cmd, flatpak_available):
    """Freeze validated settings and resolved tools into an UpdateConfig."""
    tools = settings["tools"]
    return UpdateConfig(
        apt_cmd=apt_cmd,
        timeshift_cmd=tools["timeshift"],
        snap_cmd=tools["snap"],
        flatpak_cmd=tools["flatpak"],
        fwupd_cmd=tools["fwupd"],
        flatpak_available=flatpak_available,
        backup_enabled=settings["backup"]["enabled"],
        backup_required=settings["backup"]["required"],
        backup_comment=settings["backup"]["comment"],
        network_host=settings["network"]["host"],
        network_timeout=settings["network"]["timeout"],
        disk_path=settings["disk"]["path"],
        min_free_kib=settings["disk"]["min_free_kib"],
        strict_exit_codes=settings["strict_exit_codes"],
        markers=MappingProxyType({
            step: tuple(phrases) for step, phrases in settings["markers"].items()
        }),
    )


# =============================================================================
# Logging
# =============================================================================

class ColorFormatter(logging.Formatter):
    """Wrap each message in the color given by ``extra`` or by its level."""

    LEVEL_COLORS = {
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: RED,
    }

    def __init__(self, fmt=None, datefmt=None, use_color=True):
        super().__init__(fmt, datefmt)
        self.use_color = use_color

    def formatMessage(self, record):
        color = getattr(record, "color", None)
        if color is None:
            color = self.LEVEL_COLORS.get(record.levelno, "")
        if self.use_color and color:
            record = logging.makeLogRecord(record.__dict__)
            record.message = f"{color}{record.message}{NC}"
        return super().formatMessage(record)


def ensure_log_dir(log_dir=None):
    """Create the log directory if missing. Safe to call repeatedly."""
    log_dir = Path(log_dir or LOGS_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def list_log_files(log_dir=None):
    """Return update log files, newest first."""
    log_dir = Path(log_dir or LOGS_DIR)
    if not log_dir.is_dir():
        return []
    return sorted(log_dir.glob(f"*{LOG_SUFFIX}"), reverse=True)


def latest_log_file(log_dir=None):
    logs = list_log_files(log_dir)
    return logs[0] if logs else None


def read_log_tail(lines=50, log_file=None):
    """
    Read the last N lines of an update log.

    Args:
        lines: Number of lines to read
        log_file: Log to read (newest log if None)

    Returns:
        list: List of log lines
    """
    if log_file is None:
        log_file = latest_log_file()
    if log_file is None or not Path(log_file).exists():
        return []

    with open(log_file, 'r', encoding='utf-8', errors='replace') as f:
        all_lines = f.readlines()
        return all_lines[-lines:]


# =============================================================================
# Command Execution
# =============================================================================

def command_exists(name):
    """Check whether a command is available on PATH."""
    return shutil.which(name) is not None


def run_command(args, timeout=None, stream=True, output_logger=None):
    """
    Execute an external command.

    In stream mode each output line (stdout and stderr merged) is logged
    as it arrives, the way ``tee`` mirrors it, and no timeout applies.
    Otherwise output is captured and ``timeout`` is honored.

    Args:
        args: Command and arguments as a list
        timeout: Timeout in seconds for captured commands
        stream: Log output line by line while the command runs
        output_logger: Logger for streamed lines (module logger if None)

    Returns:
        dict: Result with 'success', 'returncode', 'stdout', 'stderr', 'error' keys
    """
    output_logger = output_logger or logger
    result = {
        'success': False,
        'returncode': None,
        'stdout': '',
        'stderr': '',
        'error': None
    }

    try:
        if stream:
            lines = []
            proc = subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace',
            )
            try:
                for line in proc.stdout:
                    line = line.rstrip("\n")
                    lines.append(line)
                    output_logger.info(line, extra=PLAIN)
                proc.wait()
            except BaseException:
                proc.kill()
                proc.wait()
                raise
            finally:
                proc.stdout.close()
            result['returncode'] = proc.returncode
            result['stdout'] = "\n".join(lines)
        else:
            proc_result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
            result['returncode'] = proc_result.returncode
            result['stdout'] = proc_result.stdout
            result['stderr'] = proc_result.stderr

        result['success'] = result['returncode'] == 0
        if not result['success']:
            result['error'] = f"Exit code {result['returncode']}"

    except subprocess.TimeoutExpired:
        result['error'] = f"Timed out after {timeout} seconds"
    except FileNotFoundError:
        result['error'] = f"Command not found: {args[0]}"
    except OSError as e:
        result['error'] = str(e)

    return result


def classify_output(output, markers):
    """
    Classify command output by its "nothing to do" phrases.

    Returns NO_CHANGE if any marker occurs in the output, otherwise CHANGED.
    """
    if any(marker in output for marker in markers):
        return StepOutcome.NO_CHANGE
    return StepOutcome.CHANGED


def classify_result(result, markers, strict_exit_codes=False):
    """Classify a run_command result into a StepOutcome."""
    if result['returncode'] is None:
        return StepOutcome.FAILED
    outcome = classify_output(result['stdout'] + result['stderr'], markers)
    # a "nothing to do" marker wins over a non-zero exit
    if outcome is StepOutcome.CHANGED and strict_exit_codes and not result['success']:
        return StepOutcome.FAILED
    return outcome


# =============================================================================
# Run Lock
# =============================================================================

def get_pid(pid_file=None):
    """Read PID from file."""
    pid_file = Path(pid_file or PID_FILE)
    try:
        if pid_file.exists():
            return int(pid_file.read_text().strip())
    except (ValueError, OSError):
        logger.warning(f"Ignoring unreadable PID file: {pid_file}")
    return None


def is_running(pid=None, pid_file=None):
    """
    Check if an update process is running.

    Args:
        pid: Process ID to check (reads from PID file if None)
        pid_file: PID file to read

    Returns:
        bool: True if an update run is active
    """
    if pid is None:
        pid = get_pid(pid_file)

    if pid is None:
        return False

    try:
        proc = psutil.Process(pid)
        # console scripts are installed as update-all and update-ctl
        cmdline = ' '.join(proc.cmdline()).lower().replace('-', '_')
        return 'update_all' in cmdline or 'update_ctl' in cmdline
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False


def get_process_info(pid=None, pid_file=None):
    """
    Get detailed process information.

    Args:
        pid: Process ID (reads from PID file if None)
        pid_file: PID file to read

    Returns:
        dict: Process info or None if not running
    """
    if pid is None:
        pid = get_pid(pid_file)

    if pid is None:
        return None

    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            started = proc.create_time()
            memory = proc.memory_info().rss / 1024 / 1024  # MB
            status = proc.status()
        return {
            'pid': pid,
            'status': status,
            'started': started,
            'memory_mb': round(memory, 1),
        }
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def acquire_run_lock(pid_file=None):
    """
    Record this process as the active update run.

    Raises:
        FatalUpdateError: If another update run holds the lock
    """
    pid_file = Path(pid_file or PID_FILE)
    pid = get_pid(pid_file)

    if pid and pid != os.getpid() and is_running(pid):
        raise FatalUpdateError(f"Another update is already running (PID: {pid})")

    if pid:
        logger.debug(f"Replacing stale PID file (PID: {pid})")

    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))
    return pid_file


def release_run_lock(pid_file=None):
    """Remove the PID file if it still belongs to this process."""
    pid_file = Path(pid_file or PID_FILE)
    if get_pid(pid_file) == os.getpid():
        try:
            pid_file.unlink()
        except FileNotFoundError:
            pass
