#!/usr/bin/env python3
"""
Update Control Script (update_ctl.py)

Utility to run the system update and inspect its logs.

Usage:
    sudo python update_ctl.py run       # Run the update in the foreground
    python update_ctl.py status         # Check if an update is running
    python update_ctl.py tail [N]       # Show the last N lines of the newest log
    python update_ctl.py logs           # List update logs, newest first
    python update_ctl.py validate [F]   # Validate the configuration file
"""
import sys
import time

from update_core import (
    CONFIG_FILE, LOGS_DIR,
    get_pid, get_process_info, is_running, latest_log_file, list_log_files, read_log_tail,
)
from validate_config import validate_and_print


def run(args):
    """Run the update in the foreground."""
    import update_all
    return update_all.main()


def status(args):
    """Check update status."""
    pid = get_pid()
    latest = latest_log_file()
    exit_code = 1

    if pid is None:
        print("[IDLE] No update is running (no PID file)")
    elif is_running(pid):
        info = get_process_info(pid)
        if info:
            started = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(info['started']))
            print("[RUNNING] Update is running")
            print(f"  PID:     {info['pid']}")
            print(f"  Status:  {info['status']}")
            print(f"  Started: {started}")
            print(f"  Memory:  {info['memory_mb']} MB")
        else:
            print(f"[RUNNING] Update is running (PID: {pid})")
        exit_code = 0
    else:
        print(f"[IDLE] No update is running (stale PID: {pid})")

    print(f"  Latest log: {latest if latest else 'none'}")
    return exit_code


def tail(args):
    """Print the last lines of the newest log."""
    try:
        lines = int(args[0]) if args else 50
    except ValueError:
        print(f"[ERROR] Not a line count: {args[0]}")
        return 1

    log_file = latest_log_file()
    if log_file is None:
        print(f"[ERROR] No update logs in {LOGS_DIR}")
        return 1

    print(f"==> {log_file} <==")
    for line in read_log_tail(lines, log_file):
        print(line, end="")
    return 0


def logs(args):
    """List update logs."""
    files = list_log_files()
    if not files:
        print(f"No update logs in {LOGS_DIR}")
        return 0
    for log_file in files:
        print(f"{log_file.stat().st_size:>10}  {log_file.name}")
    return 0


def validate(args):
    """Validate the configuration file."""
    config_file = args[0] if args else CONFIG_FILE
    return 0 if validate_and_print(config_file) else 1


def usage():
    """Print usage information."""
    print(__doc__)
    print("Commands:")
    print("  run       - Run the system update (requires root)")
    print("  status    - Check if an update is running")
    print("  tail [N]  - Show the last N lines of the newest log (default 50)")
    print("  logs      - List update logs")
    print("  validate  - Validate update.yaml")
    print()


COMMANDS = {
    'run': run,
    'status': status,
    'tail': tail,
    'logs': logs,
    'validate': validate,
}


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        usage()
        return 1

    command = argv[0].lower()

    if command in COMMANDS:
        return COMMANDS[command](argv[1:])
    elif command in ('-h', '--help', 'help'):
        usage()
        return 0
    else:
        print(f"Unknown command: {command}")
        usage()
        return 1


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
