import dataclasses
import os
import signal

import pytest

import update_all
import update_core
from update_core import BLUE, GREEN, RED, StepOutcome, build_config

APT_NO_CHANGE = "0 upgraded, 0 newly installed, 0 to remove and 0 not upgraded."


def read_log(log_dir):
    logs = update_core.list_log_files(log_dir)
    assert len(logs) == 1
    return logs[0].read_text()


def test_full_run_succeeds_in_order(system, runner, log_dir):
    assert update_all.main(log_dir=log_dir) == 0

    order = [
        ("timeshift", "--create"),
        ("ping",),
        ("nala", "update"),
        ("nala", "upgrade"),
        ("nala", "full-upgrade"),
        ("nala", "autoremove"),
        ("snap", "refresh"),
        ("flatpak", "update"),
        ("fwupdmgr", "refresh"),
        ("fwupdmgr", "get-updates"),
    ]
    positions = [runner.index(*step) for step in order]
    assert positions == sorted(positions)

    log = read_log(log_dir)
    assert "Using nala for package updates." in log
    assert f"{GREEN}System update completed successfully." in log


def test_backup_uses_comment(system, runner, log_dir):
    update_all.main(log_dir=log_dir)
    assert ["timeshift", "--create", "--comments", "Backup before system update"] in runner.calls


def test_non_root_aborts_with_red_line(system, runner, log_dir):
    system.euid = 1000
    assert update_all.main(log_dir=log_dir) == 1
    assert f"{RED}Please run as root" in read_log(log_dir)
    assert runner.calls == []


def test_no_network_aborts_before_updates(system, runner, log_dir):
    runner.respond("ping", returncode=1)
    assert update_all.main(log_dir=log_dir) == 1
    assert f"{RED}No internet connection" in read_log(log_dir)
    assert not runner.ran("nala")


def test_low_disk_space_aborts(system, runner, log_dir):
    system.free_kib = 2097151
    assert update_all.main(log_dir=log_dir) == 1
    assert f"{RED}Not enough disk space" in read_log(log_dir)
    assert not runner.ran("nala", "update")


def test_disk_space_at_threshold_continues(system, runner, log_dir):
    system.free_kib = 2097152
    assert update_all.main(log_dir=log_dir) == 0


def test_upgrade_with_nothing_to_do_is_no_change(system, runner, log_dir):
    runner.respond("nala", "upgrade", output=APT_NO_CHANGE)
    update_all.main(log_dir=log_dir)
    assert f"{BLUE}No Change: No packages needed upgrading." in read_log(log_dir)


def test_failed_upgrade_is_still_reported_as_changed(system, runner, log_dir):
    runner.respond("nala", "upgrade", output="E: Could not get lock", returncode=100)
    assert update_all.main(log_dir=log_dir) == 0
    assert "Packages upgraded successfully." in read_log(log_dir)


def test_strict_exit_codes_report_failure(system, runner, log_dir, tmp_path):
    config_path = tmp_path / "update.yaml"
    config_path.write_text("strict_exit_codes: true\n")
    runner.respond("nala", "upgrade", output="E: Could not get lock", returncode=100)
    assert update_all.main(config_path=config_path, log_dir=log_dir) == 0
    assert "Step 'upgrade' failed; continuing." in read_log(log_dir)


def test_autoclean_only_with_apt_get(system, runner, log_dir):
    update_all.main(log_dir=log_dir)
    assert not runner.ran("nala", "autoclean")


def test_apt_get_fallback_runs_autoclean(system, runner, log_dir):
    system.installed.discard("nala")
    assert update_all.main(log_dir=log_dir) == 0
    assert runner.index("apt-get", "autoremove") < runner.index("apt-get", "autoclean")
    assert "Nala not found, falling back to apt-get." in read_log(log_dir)


def test_missing_flatpak_is_skipped(system, runner, log_dir):
    system.installed.discard("flatpak")
    assert update_all.main(log_dir=log_dir) == 0
    assert not runner.ran("flatpak")
    assert "Flatpak is not installed, skipping Flatpak updates." in read_log(log_dir)


def test_firmware_not_applied_when_none_detected(system, runner, log_dir):
    runner.respond("fwupdmgr", "get-updates", output="No detected devices", returncode=2)
    update_all.main(log_dir=log_dir)
    assert not runner.ran("fwupdmgr", "update")
    assert "No Change: No firmware updates available." in read_log(log_dir)


def test_firmware_applied_when_updates_listed(system, runner, log_dir):
    runner.respond("fwupdmgr", "get-updates", output="UEFI dbx: 220 -> 371")
    update_all.main(log_dir=log_dir)
    assert runner.index("fwupdmgr", "get-updates") < runner.index("fwupdmgr", "update")
    assert "Firmware updated successfully." in read_log(log_dir)


def test_backup_failure_is_not_fatal_by_default(system, runner, log_dir):
    runner.respond("timeshift", returncode=1)
    assert update_all.main(log_dir=log_dir) == 0
    assert "Timeshift backup failed" in read_log(log_dir)


def test_required_backup_failure_aborts(system, runner, log_dir, tmp_path):
    config_path = tmp_path / "update.yaml"
    config_path.write_text("backup:\n  required: true\n")
    runner.respond("timeshift", returncode=1)
    assert update_all.main(config_path=config_path, log_dir=log_dir) == 1
    assert not runner.ran("ping")


def test_disabled_backup_skips_timeshift(system, runner, log_dir, tmp_path):
    config_path = tmp_path / "update.yaml"
    config_path.write_text("backup:\n  enabled: false\n")
    assert update_all.main(config_path=config_path, log_dir=log_dir) == 0
    assert not runner.ran("timeshift")


def test_interrupt_logs_once_and_exits_1(system, runner, log_dir):
    def interrupt(args):
        os.kill(os.getpid(), signal.SIGINT)
        os.kill(os.getpid(), signal.SIGTERM)

    runner.on("snap", hook=interrupt)
    previous = signal.getsignal(signal.SIGINT)

    assert update_all.main(log_dir=log_dir) == 1

    log = read_log(log_dir)
    assert log.count("Script interrupted.") == 1
    assert f"{RED}Script interrupted." in log
    assert not runner.ran("flatpak")
    assert not runner.ran("fwupdmgr")
    assert signal.getsignal(signal.SIGINT) is previous
    assert not update_core.PID_FILE.exists()


def test_lock_released_after_run(system, runner, log_dir):
    assert update_all.main(log_dir=log_dir) == 0
    assert not update_core.PID_FILE.exists()


def test_running_twice_reuses_log_dir(system, runner, log_dir):
    assert update_all.main(log_dir=log_dir) == 0
    assert update_all.main(log_dir=log_dir) == 0
    assert log_dir.is_dir()


def test_bad_config_exits_1(system, runner, log_dir, tmp_path):
    config_path = tmp_path / "update.yaml"
    config_path.write_text("disk:\n  min_free_kib: lots\n")
    assert update_all.main(config_path=config_path, log_dir=log_dir) == 1
    assert "Configuration error" in read_log(log_dir)
    assert runner.calls == []


def test_uncolored_log_file(system, runner, log_dir, tmp_path):
    config_path = tmp_path / "update.yaml"
    config_path.write_text("color:\n  log_file: false\n")
    system.euid = 1000
    update_all.main(config_path=config_path, log_dir=log_dir)
    log = read_log(log_dir)
    assert "Please run as root" in log
    assert "\033[" not in log


def test_report_returns_outcome(settings):
    assert update_all.report("snap", StepOutcome.NO_CHANGE) is StepOutcome.NO_CHANGE


def test_update_apt_packages_outcomes(runner, settings):
    runner.respond("apt-get", "update", output="All packages are up to date.")
    config = build_config(settings, "apt-get", flatpak_available=False)
    outcomes = update_all.update_apt_packages(config)
    assert outcomes == {
        "update": StepOutcome.NO_CHANGE,
        "upgrade": StepOutcome.CHANGED,
        "full_upgrade": StepOutcome.CHANGED,
        "autoremove": StepOutcome.CHANGED,
        "autoclean": StepOutcome.CHANGED,
    }


@pytest.mark.parametrize("output, expected", [
    ("All snaps up to date.", StepOutcome.NO_CHANGE),
    ("firefox 128.0 from Mozilla refreshed", StepOutcome.CHANGED),
])
def test_refresh_snaps(runner, settings, output, expected):
    runner.respond("snap", "refresh", output=output)
    config = build_config(settings, "apt-get", flatpak_available=False)
    assert update_all.refresh_snaps(config) is expected


def test_strict_firmware_with_nothing_to_update_is_no_change(runner, settings):
    runner.respond("fwupdmgr", "get-updates", output="No updates available", returncode=2)
    config = dataclasses.replace(build_config(settings, "apt-get", False), strict_exit_codes=True)
    assert update_all.update_firmware(config) is StepOutcome.NO_CHANGE
    assert not runner.ran("fwupdmgr", "update")


def test_strict_firmware_failed_lookup_is_failed(runner, settings):
    runner.respond("fwupdmgr", "get-updates", output="Failed to connect to daemon", returncode=1)
    config = dataclasses.replace(build_config(settings, "apt-get", False), strict_exit_codes=True)
    assert update_all.update_firmware(config) is StepOutcome.FAILED


def test_interrupt_while_loading_settings(system, runner, log_dir, monkeypatch):
    def load_and_interrupt(config_path=None):
        os.kill(os.getpid(), signal.SIGTERM)
        return update_core.load_settings(config_path)

    monkeypatch.setattr(update_all, "load_settings", load_and_interrupt)
    assert update_all.main(log_dir=log_dir) == 1

    log = read_log(log_dir)
    assert log.count("Script interrupted.") == 1
    assert runner.calls == []
