"""
External command wrappers.

Every call into systemd, nginx, ufw, apt or pip goes through CommandRunner,
which applies a timeout and returns a CommandResult instead of raising. The
controllers below translate steward intents into concrete command lines.
"""

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one external command."""

    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    def describe(self) -> str:
        """Short human-readable failure description."""
        detail = (self.stderr or self.stdout).strip().splitlines()
        tail = detail[-1] if detail else "no output"
        return f"'{self.command}' exited with {self.returncode}: {tail}"


class CommandRunner:
    """Runs external commands with a bounded timeout."""

    def __init__(self, use_sudo: bool = True, timeout: int = 300):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def run(
        self,
        argv: list[str],
        sudo: bool = False,
        timeout: int | None = None,
        input: str | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run a command. Failures are returned, never raised."""
        if sudo and self.use_sudo:
            argv = ["sudo", *argv]
        argv = [str(a) for a in argv]
        logger.debug(f"Running: {' '.join(argv)}")
        result = self._execute(argv, timeout or self.timeout, input, cwd)
        if not result.ok:
            logger.debug(f"Command failed: {result.describe()}")
        return result

    def _execute(self, argv: list[str], timeout: int, input: str | None, cwd: str | None) -> CommandResult:
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input,
                cwd=cwd,
            )
            return CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)
        except subprocess.TimeoutExpired:
            return CommandResult(argv, -1, stderr=f"timed out after {timeout}s")
        except FileNotFoundError:
            return CommandResult(argv, 127, stderr=f"{argv[0]}: command not found")
        except OSError as e:
            return CommandResult(argv, -1, stderr=str(e))

    # Privileged file helpers: direct when the target is writable, sudo otherwise.

    def write_file(self, path: Path, content: str) -> CommandResult:
        """Write content to path, escalating through `sudo tee` if needed."""
        argv = ["write", str(path)]
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            return CommandResult(argv, 0)
        except PermissionError:
            if not self.use_sudo:
                return CommandResult(argv, 1, stderr=f"Permission denied writing to {path}")
        except OSError as e:
            return CommandResult(argv, 1, stderr=str(e))
        result = self.run(["tee", str(path)], sudo=True, input=content)
        result.stdout = ""
        return result

    def symlink(self, target: Path, link: Path) -> CommandResult:
        """Point link at target, replacing whatever link existed."""
        argv = ["ln", "-sf", str(target), str(link)]
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(target)
            return CommandResult(argv, 0)
        except PermissionError:
            if not self.use_sudo:
                return CommandResult(argv, 1, stderr=f"Permission denied linking {link}")
        except OSError as e:
            return CommandResult(argv, 1, stderr=str(e))
        return self.run(argv, sudo=True)

    def remove_file(self, path: Path) -> CommandResult:
        """Remove a file or symlink. A missing file counts as success."""
        argv = ["rm", "-f", str(path)]
        try:
            path.unlink(missing_ok=True)
            return CommandResult(argv, 0)
        except PermissionError:
            if not self.use_sudo:
                return CommandResult(argv, 1, stderr=f"Permission denied removing {path}")
        except OSError as e:
            return CommandResult(argv, 1, stderr=str(e))
        return self.run(argv, sudo=True)


class SystemdController:
    """Drives systemctl for steward-managed units."""

    def __init__(self, runner: CommandRunner, systemd_dir: Path):
        self.runner = runner
        self.systemd_dir = Path(systemd_dir)

    def unit_path(self, service_name: str) -> Path:
        return self.systemd_dir / f"{service_name}.service"

    def write_unit(self, service_name: str, content: str) -> CommandResult:
        return self.runner.write_file(self.unit_path(service_name), content)

    def remove_unit(self, service_name: str) -> CommandResult:
        return self.runner.remove_file(self.unit_path(service_name))

    def daemon_reload(self) -> CommandResult:
        return self.runner.run(["systemctl", "daemon-reload"], sudo=True)

    def _unit(self, action: str, service_name: str) -> CommandResult:
        return self.runner.run(["systemctl", action, f"{service_name}.service"], sudo=True)

    def enable(self, service_name: str) -> CommandResult:
        return self._unit("enable", service_name)

    def disable(self, service_name: str) -> CommandResult:
        return self._unit("disable", service_name)

    def start(self, service_name: str) -> CommandResult:
        return self._unit("start", service_name)

    def stop(self, service_name: str) -> CommandResult:
        return self._unit("stop", service_name)

    def restart(self, service_name: str) -> CommandResult:
        return self._unit("restart", service_name)

    def status(self, service_name: str) -> CommandResult:
        return self.runner.run(
            ["systemctl", "status", f"{service_name}.service", "--no-pager", "--lines=10"],
            sudo=True,
        )


class NginxController:
    """Manages nginx site files and the nginx daemon."""

    def __init__(self, runner: CommandRunner, available_dir: Path, enabled_dir: Path):
        self.runner = runner
        self.available_dir = Path(available_dir)
        self.enabled_dir = Path(enabled_dir)

    def enabled_path(self, site: Path) -> Path:
        return self.enabled_dir / Path(site).name

    def write_site(self, site: Path, content: str) -> CommandResult:
        return self.runner.write_file(Path(site), content)

    def link_site(self, site: Path) -> CommandResult:
        return self.runner.symlink(Path(site), self.enabled_path(site))

    def unlink_site(self, site: Path) -> CommandResult:
        return self.runner.remove_file(self.enabled_path(site))

    def remove_site(self, site: Path) -> CommandResult:
        return self.runner.remove_file(Path(site))

    def test_config(self) -> CommandResult:
        return self.runner.run(["nginx", "-t"], sudo=True)

    def reload(self) -> CommandResult:
        return self.runner.run(["systemctl", "reload", "nginx"], sudo=True)

    def start(self) -> CommandResult:
        return self.runner.run(["systemctl", "start", "nginx"], sudo=True)

    def status(self) -> CommandResult:
        return self.runner.run(["systemctl", "status", "nginx", "--no-pager", "--lines=10"], sudo=True)

    def list_enabled(self) -> list[str]:
        return _list_dir(self.enabled_dir)

    def list_available(self) -> list[str]:
        return _list_dir(self.available_dir)


def _list_dir(path: Path) -> list[str]:
    try:
        return sorted(p.name for p in path.iterdir())
    except OSError:
        return []


class UfwController:
    """Thin wrapper over the ufw command line."""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def _ufw(self, *args: str) -> CommandResult:
        return self.runner.run(["ufw", *args], sudo=True)

    def reset(self) -> CommandResult:
        return self._ufw("--force", "reset")

    def default(self, policy: str, direction: str) -> CommandResult:
        return self._ufw("default", policy, direction)

    def allow(self, rule: str, comment: str | None = None) -> CommandResult:
        args = ["allow", rule]
        if comment:
            args += ["comment", comment]
        return self._ufw(*args)

    def enable(self) -> CommandResult:
        return self._ufw("--force", "enable")

    def status(self) -> CommandResult:
        return self._ufw("status", "verbose")


class PackageInstaller:
    """apt for system packages, venv + pip for application runtimes."""

    def __init__(self, runner: CommandRunner, timeout: int = 1800):
        self.runner = runner
        self.timeout = timeout

    def apt_update(self) -> CommandResult:
        return self.runner.run(["apt-get", "update", "-y"], sudo=True, timeout=self.timeout)

    def apt_upgrade(self) -> CommandResult:
        return self.runner.run(["apt-get", "upgrade", "-y"], sudo=True, timeout=self.timeout)

    def apt_install(self, packages: list[str]) -> CommandResult:
        return self.runner.run(
            ["apt-get", "install", "-y", *packages], sudo=True, timeout=self.timeout
        )

    def create_venv(self, venv_dir: Path) -> CommandResult:
        return self.runner.run(["python3", "-m", "venv", str(venv_dir)], timeout=self.timeout)

    def pip_install(
        self,
        venv_dir: Path,
        packages: list[str],
        upgrade: bool = False,
        no_cache: bool = False,
    ) -> CommandResult:
        argv = [str(Path(venv_dir) / "bin" / "pip"), "install"]
        if upgrade:
            argv.append("--upgrade")
        if no_cache:
            argv.append("--no-cache-dir")
        return self.runner.run(argv + list(packages), timeout=self.timeout)

    def pip_outdated(self, venv_dir: Path) -> tuple[CommandResult, list[str]]:
        """List outdated distributions in a venv."""
        pip = str(Path(venv_dir) / "bin" / "pip")
        result = self.runner.run([pip, "list", "--outdated", "--format=json"], timeout=self.timeout)
        if not result.ok:
            return result, []
        try:
            names = [item["name"] for item in json.loads(result.stdout or "[]")]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.warning("Could not parse pip list output")
            names = []
        return result, names

    def venv_exists(self, venv_dir: Path) -> bool:
        return os.path.isfile(Path(venv_dir) / "bin" / "python")
