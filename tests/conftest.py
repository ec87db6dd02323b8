from __future__ import annotations

from pathlib import Path

import pytest

from steward.commands import CommandResult, CommandRunner
from steward.config import Config
from steward.models import database, initialize_db
from steward.orchestrator import LifecycleOrchestrator


class FakeRunner(CommandRunner):
    """Records every command instead of running it.

    `python3 -m venv <dir>` creates <dir>/bin/python so later venv checks pass.
    Commands whose joined argv contains any string in `fail` return exit 1.
    """

    def __init__(self):
        super().__init__(use_sudo=True, timeout=5)
        self.calls: list[list[str]] = []
        self.fail: set[str] = set()
        self.stdout: dict[str, str] = {}

    def _execute(self, argv, timeout, input, cwd) -> CommandResult:
        self.calls.append(list(argv))
        command = " ".join(argv)
        if any(pattern in command for pattern in self.fail):
            return CommandResult(argv, 1, stderr="simulated failure")
        if argv[-3:-1] == ["-m", "venv"]:
            bin_dir = Path(argv[-1]) / "bin"
            bin_dir.mkdir(parents=True, exist_ok=True)
            (bin_dir / "python").write_text("")
        out = next((v for k, v in self.stdout.items() if k in command), "")
        return CommandResult(argv, 0, stdout=out)

    def commands(self) -> list[str]:
        return [" ".join(c) for c in self.calls]

    def ufw_allows(self) -> list[str]:
        return [" ".join(c[3:]) for c in self.calls if c[:3] == ["sudo", "ufw", "allow"]]


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        data_dir=tmp_path / "data",
        apps_root=tmp_path / "apps",
        backup_dir=tmp_path / "backups",
        systemd_dir=tmp_path / "systemd",
        nginx_available_dir=tmp_path / "nginx" / "sites-available",
        nginx_enabled_dir=tmp_path / "nginx" / "sites-enabled",
        nginx_log_dir=tmp_path / "nginx" / "log",
        user="deploy",
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def bound_ports() -> set[int]:
    """Ports the fake host reports as already listening."""
    return set()


@pytest.fixture
def orchestrator(config, runner, bound_ports) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(config, runner=runner, is_bound=lambda port: port in bound_ports)


@pytest.fixture
def history(config):
    """Workflow history in a throwaway SQLite file, detached afterwards."""
    initialize_db(config)
    yield
    database.obj.close()
    database.initialize(None)
