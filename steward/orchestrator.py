"""
Application lifecycle workflows.

The orchestrator is the only writer of the registry. Each workflow checks its
inputs up front and raises before touching anything when they are wrong; once
it starts mutating, failures of external commands are collected as warnings
and the workflow carries on to its final registry write so it can simply be
run again.

Stages move uninitialized -> provisioned -> active. The registry write that
records an intended change (a new port, a new stage) always lands before the
external step that realizes it.
"""

import logging
import os
import shutil
import tarfile
from contextlib import nullcontext
from datetime import datetime
from pathlib import Path
from typing import Callable, ContextManager

import httpx

from .commands import (
    CommandRunner,
    NginxController,
    PackageInstaller,
    SystemdController,
    UfwController,
)
from .config import Config
from .errors import PortUnavailableError, PreconditionError, ValidationError
from .fleet import FleetCoordinator
from .models import record_outcome
from .outcome import WorkflowOutcome
from .ports import PORT_RANGES, PortAllocator, PortCheck, is_port_bound
from .provisioner import ResourceProvisioner, render_scaffold
from .registry import (
    SERVICE_PREFIX,
    Application,
    ApplicationRegistry,
    RegistryIndex,
    ServerType,
    Stage,
    validate_name,
)

logger = logging.getLogger(__name__)

ENTRY_POINTS = ("app.py", "wsgi.py")
APP_LAYOUT = ("templates", "static/css", "static/js", "static/images")
PORT_CHOICES = ("default", "auto-5000", "auto-8000", "custom", "current")
SERVICE_ACTIONS = ("start", "stop", "restart", "status")
NGINX_ACTIONS = ("status", "reload", "test", "list-enabled", "list-available")

RESTORE_INSTRUCTIONS = """\
To restore a steward backup:
  1. Stop steward (the CLI menu and any `steward serve` process).
  2. tar -xzf steward_backup_<timestamp>.tar.gz -C {data_dir}
  3. Re-run Full Setup for each application to regenerate its systemd unit,
     nginx site and firewall rules.
"""


def _silent_progress(message: str) -> ContextManager:
    return nullcontext()


class LifecycleOrchestrator:
    """Runs steward workflows against one registry."""

    def __init__(
        self,
        config: Config,
        runner: CommandRunner | None = None,
        is_bound: Callable[[int], bool] = is_port_bound,
        progress: Callable[[str], ContextManager] | None = None,
        http_get: Callable = httpx.get,
    ):
        self.config = config
        self.runner = runner or CommandRunner(config.use_sudo, config.command_timeout)
        self.progress = progress or _silent_progress
        self.http_get = http_get

        self.registry = ApplicationRegistry(config)
        self.allocator = PortAllocator(self.registry, is_bound)
        self.systemd = SystemdController(self.runner, config.systemd_dir)
        self.nginx = NginxController(self.runner, config.nginx_available_dir, config.nginx_enabled_dir)
        self.ufw = UfwController(self.runner)
        self.packages = PackageInstaller(self.runner, config.package_timeout)
        self.provisioner = ResourceProvisioner(config, self.systemd, self.nginx)
        self.fleet = FleetCoordinator(self.registry, self.ufw, is_bound)

    # Helpers

    def _done(self, outcome: WorkflowOutcome, stage=None) -> WorkflowOutcome:
        outcome.finish(stage)
        record_outcome(outcome)
        if outcome.warnings:
            logger.warning(f"{outcome.workflow} finished with {len(outcome.warnings)} warning(s)")
        return outcome

    def _require_registered(self, name: str, index: RegistryIndex) -> None:
        if name not in index:
            raise ValidationError(f"Application '{name}' is not registered")

    def _check_new_name(self, name: str, index: RegistryIndex) -> None:
        validate_name(name)
        if name in index:
            raise ValidationError(f"Application '{name}' already exists")

    def _parse_server_type(self, server_type) -> ServerType:
        try:
            return ServerType(server_type)
        except ValueError:
            choices = ", ".join(s.value for s in ServerType)
            raise ValidationError(f"Unknown server type '{server_type}' (choose {choices})") from None

    def _create_venv(self, app: Application, outcome: WorkflowOutcome, recreate: bool = False):
        if recreate and app.venv_dir.exists():
            outcome.info(f"Removing existing venv at {app.venv_dir}")
            self._remove_tree(app.venv_dir, outcome)
        with self.progress(f"Creating venv for {app.name}..."):
            outcome.check(self.packages.create_venv(app.venv_dir), f"Creating venv {app.venv_dir}")

    def _install_python_packages(self, app: Application, outcome: WorkflowOutcome, no_cache: bool = False):
        if not self.packages.venv_exists(app.venv_dir):
            outcome.warn(f"Venv missing at {app.venv_dir}, skipping package install")
            return
        packages = list(self.config.python_packages)
        with self.progress(f"Installing {' '.join(packages)}..."):
            outcome.check(self.packages.pip_install(app.venv_dir, ["pip"], upgrade=True), "Upgrading pip")
            outcome.check(self.packages.pip_install(app.venv_dir, packages, no_cache=no_cache),
                          f"Installing {' '.join(packages)}")

    def _scaffold(self, app: Application, outcome: WorkflowOutcome):
        entry = app.app_dir / "app.py"
        if entry.exists() or (app.app_dir / "wsgi.py").exists():
            return
        try:
            app.app_dir.mkdir(parents=True, exist_ok=True)
            entry.write_text(render_scaffold(app))
            outcome.info(f"Minimal Flask app template created at {entry}")
        except OSError as e:
            outcome.warn(f"Could not write {entry}: {e}")

    def _remove_tree(self, path: Path, outcome: WorkflowOutcome):
        if not path.exists() and not path.is_symlink():
            return
        try:
            shutil.rmtree(path)
        except PermissionError:
            outcome.check(self.runner.run(["rm", "-rf", str(path)], sudo=True), f"Removing {path}")
        except OSError as e:
            outcome.warn(f"Removing {path} failed: {e}")

    def detect_entry_points(self, path: Path) -> list[str]:
        return [f for f in ENTRY_POINTS if (Path(path) / f).is_file()]

    def _check_entry_point(self, app: Application, outcome: WorkflowOutcome) -> bool:
        found = self.detect_entry_points(app.app_dir)
        outcome.data["entry_points"] = found
        if not found:
            outcome.warn(f"No {' or '.join(ENTRY_POINTS)} found in {app.app_dir}; runtime test skipped")
            return False
        outcome.info(f"Found {', '.join(found)} in {app.app_dir}")
        return True

    # Selection

    def index(self) -> RegistryIndex:
        return self.registry.load()

    def current(self) -> Application:
        """The current application's record."""
        return self.registry.load_application(self.index().current)

    def resolve_selection(self, choice: str, index: RegistryIndex | None = None) -> str:
        """Translate a 1-based menu number into an application name."""
        index = index or self.index()
        text = str(choice).strip()
        if not (text.isascii() and text.isdigit()):
            raise ValidationError(f"Invalid selection '{choice}'")
        position = int(text) - 1
        if position < 0 or position >= len(index.names):
            raise ValidationError(f"Selection {choice} is out of range (1-{len(index.names)})")
        return index.names[position]

    def switch(self, name: str) -> WorkflowOutcome:
        """Make name the current application."""
        index = self.index()
        self._require_registered(name, index)
        index.current = name
        self.registry.save_index(index)
        app = self.registry.load_application(name)
        outcome = WorkflowOutcome("switch", name)
        outcome.info(f"Switched to {name}")
        return self._done(outcome, app.stage)

    # Create / import

    def create(self, name: str) -> WorkflowOutcome:
        """Register a new application with a fresh venv and a scaffolded app.py."""
        index = self.index()
        self._check_new_name(name, index)
        port = self.allocator.find_in_range("auto-5000", excluding=name, index=index)
        if port is None:
            start, end = PORT_RANGES["auto-5000"]
            raise PortUnavailableError(f"No free port in {start}-{end} for '{name}'")

        outcome = WorkflowOutcome("create", name)
        index.add(name)
        index.current = name
        self.registry.save_index(index)

        app = self.registry.default_application(name, port=port)
        self.registry.save(app)

        try:
            app.app_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            outcome.warn(f"Could not create {app.app_dir}: {e}")
        self._create_venv(app, outcome)
        self._install_python_packages(app, outcome)
        self._scaffold(app, outcome)

        self.registry.save(app)
        outcome.info(f"App {name} created at {app.app_dir} (port {app.port})")
        return self._done(outcome, app.stage)

    def import_app(
        self,
        path,
        name: str,
        server_type: str = "gunicorn",
        port=None,
        provision: bool = False,
    ) -> WorkflowOutcome:
        """Register an existing application directory."""
        app_dir = Path(path).expanduser() if path else None
        if app_dir is None or not app_dir.is_dir():
            raise ValidationError(f"Directory not found: {path}")
        index = self.index()
        self._check_new_name(name, index)
        server = self._parse_server_type(server_type)
        if port is None or port == "":
            port = self.config.default_port
        check = self.allocator.validate(port, excluding=name, index=index)
        if check != PortCheck.VALID:
            raise PortUnavailableError(check.describe(port), check)

        outcome = WorkflowOutcome("import", name)
        found = self.detect_entry_points(app_dir)
        outcome.data["entry_points"] = found
        if found:
            outcome.info(f"Detected {', '.join(found)} in {app_dir}")
        else:
            outcome.warn(f"No {' or '.join(ENTRY_POINTS)} in {app_dir}; add one before going live")

        service_name = f"{SERVICE_PREFIX}{name}"
        app = Application(
            name=name,
            app_dir=app_dir.resolve(),
            venv_dir=app_dir.resolve() / "venv",
            service_name=service_name,
            nginx_config=self.config.nginx_available_dir / service_name,
            server_type=server,
            port=int(port),
            entry_module="wsgi" if found == ["wsgi.py"] else "app",
            managed_dir=False,
        )
        index.add(name)
        index.current = name
        self.registry.save_index(index)
        self.registry.save(app)
        outcome.info(f"Imported {name} -> {app.app_dir}")

        if not provision:
            outcome.info("Imported without creating the systemd service or nginx site")
            return self._done(outcome, app.stage)

        if not self.packages.venv_exists(app.venv_dir):
            self._create_venv(app, outcome)
            self._install_python_packages(app, outcome)
        self.fleet.rebuild_firewall(outcome, index)
        if self.provisioner.apply(app, outcome):
            app.stage = Stage.PROVISIONED
            self.registry.save(app)
            outcome.check(self.systemd.start(app.service_name), f"Starting {app.service_name}")
            outcome.check(self.nginx.reload(), "Reloading nginx")
            app.stage = Stage.ACTIVE
            self.registry.save(app)
            outcome.info(f"systemd & nginx started for {name}")
        return self._done(outcome, app.stage)

    # Full setup

    def resolve_port(
        self,
        app: Application,
        choice: str = "default",
        port=None,
        index: RegistryIndex | None = None,
    ) -> int:
        """Pick the port for app according to choice, or raise PortUnavailableError."""
        if choice not in PORT_CHOICES:
            raise ValidationError(f"Unknown port choice '{choice}' (choose {', '.join(PORT_CHOICES)})")

        if choice in PORT_RANGES:
            found = self.allocator.find_in_range(choice, excluding=app.name, index=index)
            if found is None:
                start, end = PORT_RANGES[choice]
                raise PortUnavailableError(f"No free port in {start}-{end}")
            return found

        if choice == "current":
            candidate = app.port
        elif choice == "default":
            candidate = self.config.default_port
        else:
            candidate = port
        # The app's own listener may already be bound to its port.
        own = str(candidate).strip() == str(app.port)
        check = self.allocator.validate(candidate, excluding=app.name, index=index, check_os=not own)
        if check != PortCheck.VALID:
            raise PortUnavailableError(check.describe(candidate), check)
        return int(candidate)

    def full_setup(self, name: str, choice: str = "default", port=None) -> WorkflowOutcome:
        """Install, provision and start name, ending in the active stage."""
        index = self.index()
        self._require_registered(name, index)
        app = self.registry.load_application(name)
        new_port = self.resolve_port(app, choice, port, index)

        outcome = WorkflowOutcome("full_setup", name)
        outcome.info(f"Starting full setup for {name} on port {new_port}")
        app.port = new_port
        self.registry.save(app)

        with self.progress("Installing system packages..."):
            outcome.check(self.packages.apt_update(), "apt-get update")
            outcome.check(self.packages.apt_install(list(self.config.system_packages)),
                          "Installing system packages")
        self.fleet.rebuild_firewall(outcome, index)

        for sub in APP_LAYOUT:
            try:
                (app.app_dir / sub).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                outcome.warn(f"Could not create {app.app_dir / sub}: {e}")

        self._create_venv(app, outcome, recreate=True)
        self._install_python_packages(app, outcome)
        self._scaffold(app, outcome)
        self._fix_permissions(app, outcome)
        self._check_entry_point(app, outcome)

        if self.provisioner.apply(app, outcome):
            app.stage = Stage.PROVISIONED
            self.registry.save(app)

            outcome.check(self.nginx.start(), "Starting nginx")
            outcome.check(self.systemd.start(app.service_name), f"Starting {app.service_name}")
            app.stage = Stage.ACTIVE
        else:
            outcome.warn("Artifacts were not written; stage left unchanged, re-run full setup")
        self.registry.save(app)
        outcome.info(f"Full setup complete for {name} ({app.stage.value})")
        return self._done(outcome, app.stage)

    # Record-only changes

    def change_port(self, name: str, port) -> WorkflowOutcome:
        """Change the recorded port. Artifacts are not regenerated."""
        index = self.index()
        self._require_registered(name, index)
        check = self.allocator.validate(port, excluding=name, index=index)
        if check != PortCheck.VALID:
            raise PortUnavailableError(check.describe(port), check)

        app = self.registry.load_application(name)
        old = app.port
        app.port = int(port)
        self.registry.save(app)

        outcome = WorkflowOutcome("change_port", name)
        outcome.info(f"Port changed from {old} to {app.port}")
        if app.stage != Stage.UNINITIALIZED:
            outcome.info("Re-run full setup to apply the new port to systemd, nginx and the firewall")
        return self._done(outcome, app.stage)

    def set_server_type(self, name: str, server_type: str) -> WorkflowOutcome:
        index = self.index()
        self._require_registered(name, index)
        server = self._parse_server_type(server_type)
        app = self.registry.load_application(name)
        app.server_type = server
        self.registry.save(app)
        outcome = WorkflowOutcome("set_server_type", name)
        outcome.info(f"Server type set to {server.value}")
        return self._done(outcome, app.stage)

    # Delete

    def delete(self, name: str, confirm: bool = False) -> WorkflowOutcome:
        """Tear down name and drop it from the registry."""
        index = self.index()
        self._require_registered(name, index)
        if name == index.current:
            raise PreconditionError(f"Cannot delete current application '{name}'. Switch first.")

        outcome = WorkflowOutcome("delete", name)
        if not confirm:
            outcome.cancelled = True
            outcome.info("Cancelled")
            return self._done(outcome)

        app = self.registry.get(name) or self.registry.default_application(name)
        try:
            self.provisioner.teardown(app, outcome)
            try:
                self.registry.delete_record(name)
            except OSError as e:
                outcome.warn(f"Removing record for {name} failed: {e}")
            self._remove_tree(app.venv_dir, outcome)
            if app.managed_dir:
                self._remove_tree(app.app_dir, outcome)
        finally:
            index.remove(name)
            self.registry.save_index(index)

        outcome.check(self.systemd.daemon_reload(), "systemctl daemon-reload")
        outcome.check(self.nginx.reload(), "Reloading nginx")
        self.fleet.rebuild_firewall(outcome, index)
        outcome.info(f"Deleted {name}")
        return self._done(outcome, "removed")

    # Maintenance

    def _fix_permissions(self, app: Application, outcome: WorkflowOutcome):
        user = self.config.user
        outcome.check(self.systemd.stop(app.service_name), f"Stopping {app.service_name}")
        outcome.check(
            self.runner.run(["chown", "-R", f"{user}:{user}", str(app.app_dir)], sudo=True),
            f"chown {app.app_dir}",
        )

        failures = 0
        for root, dirs, files in os.walk(app.app_dir):
            # Leave venv executables alone.
            if Path(root) == app.app_dir and app.venv_dir.parent == app.app_dir:
                dirs[:] = [d for d in dirs if d != app.venv_dir.name]
            for d in dirs:
                try:
                    os.chmod(os.path.join(root, d), 0o755)
                except OSError:
                    failures += 1
            for f in files:
                try:
                    os.chmod(os.path.join(root, f), 0o644)
                except OSError:
                    failures += 1
        if failures:
            outcome.warn(f"Could not change mode of {failures} path(s) under {app.app_dir}")

        if self.packages.venv_exists(app.venv_dir):
            self._install_python_packages(app, outcome, no_cache=True)

    def fix_permissions(self, name: str) -> WorkflowOutcome:
        index = self.index()
        self._require_registered(name, index)
        app = self.registry.load_application(name)
        outcome = WorkflowOutcome("fix_permissions", name)
        self._fix_permissions(app, outcome)
        outcome.info("Permissions and packages adjusted")
        return self._done(outcome, app.stage)

    def smoke_test(self, name: str) -> WorkflowOutcome:
        """Check the entry point and, for active apps, that the port answers HTTP."""
        index = self.index()
        self._require_registered(name, index)
        app = self.registry.load_application(name)
        outcome = WorkflowOutcome("smoke_test", name)
        self._check_entry_point(app, outcome)

        if app.is_active:
            url = f"http://127.0.0.1:{app.port}/"
            try:
                response = self.http_get(url, timeout=5.0)
                outcome.data["http_status"] = response.status_code
                if response.status_code < 500:
                    outcome.info(f"{url} answered {response.status_code}")
                else:
                    outcome.warn(f"{url} answered {response.status_code}")
            except httpx.HTTPError as e:
                outcome.warn(f"{url} is not reachable: {e}")
        else:
            outcome.info(f"{name} is {app.stage.value}; HTTP check skipped")
        return self._done(outcome, app.stage)

    def update_system_packages(self) -> WorkflowOutcome:
        outcome = WorkflowOutcome("update_system_packages")
        with self.progress("Updating system packages..."):
            outcome.check(self.packages.apt_update(), "apt-get update")
            outcome.check(self.packages.apt_upgrade(), "apt-get upgrade")
        outcome.info("System updated")
        return self._done(outcome)

    def update_python_packages(self, name: str) -> WorkflowOutcome:
        index = self.index()
        self._require_registered(name, index)
        app = self.registry.load_application(name)
        outcome = WorkflowOutcome("update_python_packages", name)
        if not self.packages.venv_exists(app.venv_dir):
            outcome.warn(f"Venv not present at {app.venv_dir}")
            return self._done(outcome, app.stage)

        with self.progress("Updating Python packages..."):
            result, outdated = self.packages.pip_outdated(app.venv_dir)
            outcome.check(result, "pip list --outdated")
            if outdated:
                outcome.check(self.packages.pip_install(app.venv_dir, outdated, upgrade=True),
                              f"Upgrading {', '.join(outdated)}")
        outcome.data["upgraded"] = outdated
        outcome.info(f"Python packages updated ({len(outdated)} upgraded)")
        return self._done(outcome, app.stage)

    # Service, nginx and firewall administration

    def service_action(self, name: str, action: str) -> WorkflowOutcome:
        if action not in SERVICE_ACTIONS:
            raise ValidationError(f"Unknown service action '{action}'")
        index = self.index()
        self._require_registered(name, index)
        app = self.registry.load_application(name)
        outcome = WorkflowOutcome(f"service_{action}", name)
        result = getattr(self.systemd, action)(app.service_name)
        outcome.data["output"] = result.stdout
        if action == "status":
            # systemctl status exits non-zero for inactive units
            outcome.data["returncode"] = result.returncode
        else:
            outcome.check(result, f"systemctl {action} {app.service_name}")
        return self._done(outcome, app.stage)

    def nginx_admin(self, action: str) -> WorkflowOutcome:
        outcome = WorkflowOutcome(f"nginx_{action}")
        if action == "status":
            result = self.nginx.status()
            outcome.data["output"] = result.stdout
        elif action == "reload":
            if outcome.check(self.nginx.reload(), "Reloading nginx"):
                outcome.info("Reloaded nginx")
        elif action == "test":
            result = self.nginx.test_config()
            outcome.data["output"] = result.stderr or result.stdout
            if outcome.check(result, "nginx -t"):
                outcome.info("nginx test OK")
        elif action == "list-enabled":
            outcome.data["sites"] = self.nginx.list_enabled()
        elif action == "list-available":
            outcome.data["sites"] = self.nginx.list_available()
        else:
            raise ValidationError(f"Unknown nginx action '{action}'")
        return self._done(outcome)

    def firewall_status(self) -> WorkflowOutcome:
        outcome = WorkflowOutcome("firewall_status")
        result = self.ufw.status()
        outcome.check(result, "ufw status")
        outcome.data["output"] = result.stdout
        return self._done(outcome)

    def rebuild_firewall(self) -> WorkflowOutcome:
        outcome = WorkflowOutcome("rebuild_firewall")
        self.fleet.rebuild_firewall(outcome, self.index())
        outcome.info("Firewall configured")
        return self._done(outcome)

    def status_overview(self) -> list[dict]:
        return self.fleet.status_overview(self.index())

    # Backup

    def backup(self) -> WorkflowOutcome:
        """Archive fleet.json and every application record."""
        self.index()  # ensure fleet.json exists
        outcome = WorkflowOutcome("backup")
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        archive = self.config.backup_dir / f"steward_backup_{stamp}.tar.gz"
        try:
            archive.parent.mkdir(parents=True, exist_ok=True)
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(self.config.fleet_file, arcname=self.config.fleet_file.name)
                if self.config.apps_dir.exists():
                    tar.add(self.config.apps_dir, arcname=self.config.apps_dir.name)
            os.chmod(archive, 0o600)
        except OSError as e:
            outcome.warn(f"Backup failed: {e}")
            return self._done(outcome)
        outcome.data["archive"] = str(archive)
        outcome.info(f"Backup saved to {archive}")
        return self._done(outcome)

    def restore_instructions(self) -> str:
        return RESTORE_INSTRUCTIONS.format(data_dir=self.config.data_dir)
