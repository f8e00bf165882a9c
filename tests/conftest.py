import pytest

import preflight
import update_all
import update_core
from validate_config import normalize_config


class FakeRunner:
    """Stands in for update_core.run_command, answering by command prefix."""

    def __init__(self):
        self.calls = []
        self.responses = {}
        self.hooks = {}

    def respond(self, *prefix, output="", returncode=0):
        self.responses[prefix] = (output, returncode)

    def on(self, *prefix, hook):
        self.hooks[prefix] = hook

    def _match(self, table, args):
        best = None
        for prefix in table:
            if tuple(args[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        return best

    def __call__(self, args, timeout=None, stream=True, output_logger=None):
        args = list(args)
        self.calls.append(args)

        hook = self._match(self.hooks, args)
        if hook is not None:
            self.hooks[hook](args)

        prefix = self._match(self.responses, args)
        output, returncode = self.responses[prefix] if prefix is not None else ("", 0)
        return {
            'success': returncode == 0,
            'returncode': returncode,
            'stdout': output,
            'stderr': '',
            'error': None if returncode == 0 else f"Exit code {returncode}",
        }

    def ran(self, *prefix):
        return any(tuple(call[:len(prefix)]) == prefix for call in self.calls)

    def index(self, *prefix):
        for i, call in enumerate(self.calls):
            if tuple(call[:len(prefix)]) == prefix:
                return i
        raise ValueError(f"{prefix} was not run")


class FakeSystem:
    """Controls what the preflight checks observe."""

    def __init__(self):
        self.euid = 0
        self.installed = {"nala", "apt-get", "timeshift", "snap", "flatpak", "fwupdmgr", "ping"}
        self.free_kib = 50 * 1024 * 1024


@pytest.fixture
def settings():
    return normalize_config({})


@pytest.fixture
def runner(monkeypatch):
    fake = FakeRunner()
    monkeypatch.setattr(update_all, "run_command", fake)
    monkeypatch.setattr(preflight, "run_command", fake)
    return fake


@pytest.fixture
def system(monkeypatch, tmp_path, runner):
    fake = FakeSystem()
    monkeypatch.setattr(preflight.os, "geteuid", lambda: fake.euid)
    monkeypatch.setattr(preflight, "command_exists", lambda name: name in fake.installed)
    monkeypatch.setattr(preflight, "free_space_kib", lambda path="/": fake.free_kib)
    monkeypatch.setattr(update_core, "PID_FILE", tmp_path / "update.pid")
    monkeypatch.setattr(update_core, "CONFIG_FILE", tmp_path / "absent.yaml")
    return fake


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "linux-scripts" / "script_logs"
