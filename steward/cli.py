"""
Typer-powered command line for steward.

Running `steward` with no arguments opens the interactive menu, which drives
every workflow against the current application. `steward status`,
`steward backup` and `steward serve` are available for scripting.
"""

import logging
import textwrap
from typing import Callable

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .config import Config, ensure_unprivileged, load_config
from .errors import FatalStartupError, StewardError
from .log import configure_logging
from .models import initialize_db
from .orchestrator import LifecycleOrchestrator
from .outcome import WorkflowOutcome
from .ports import PortCheck

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Steward - multi-app nginx deployment and management tool.

        Creates, imports, provisions and removes Python web applications,
        each behind nginx, supervised by systemd and allowed through ufw.
        """
    ).strip(),
)

MENU_ITEMS = (
    ("1", "Manage Applications"),
    ("2", "Full Setup (Current App)"),
    ("3", "Update System Packages"),
    ("4", "Update Python Packages"),
    ("5", "Switch Server Mode"),
    ("6", "Change Application Port"),
    ("7", "Service Management"),
    ("8", "Firewall Status"),
    ("9", "Status Overview"),
    ("10", "Backup Configuration"),
    ("11", "Restore Configuration"),
    ("12", "Fix Permissions"),
    ("13", "Test Server"),
    ("14", "Nginx Management"),
    ("0", "Exit"),
)

PORT_MENU = (
    ("1", "Default port", "default"),
    ("2", "Auto find 5000-5100", "auto-5000"),
    ("3", "Auto find 8000-8100", "auto-8000"),
    ("4", "Enter custom", "custom"),
    ("5", "Keep current port", "current"),
)


def log_info(message: str):
    console.print(f"[green]\\[✓ INFO][/green] {message}")


def log_warn(message: str):
    console.print(f"[yellow]\\[⚠ WARN][/yellow] {message}")


def log_error(message: str):
    console.print(f"[red]\\[✗ ERROR][/red] {message}")


def report(outcome: WorkflowOutcome):
    """Print an outcome's messages and warnings with severity markers."""
    for message in outcome.messages:
        log_info(message)
    for warning in outcome.warnings:
        log_warn(warning)
    output = outcome.data.get("output")
    if output:
        console.print(output.rstrip(), markup=False, highlight=False)


def _bootstrap(console_logging: bool = False) -> tuple[Config, LifecycleOrchestrator]:
    """Refuse root, load configuration and build the orchestrator."""
    try:
        ensure_unprivileged()
    except FatalStartupError as e:
        log_error(str(e))
        raise typer.Exit(code=1)

    config = load_config()
    configure_logging(config, console=console_logging)
    initialize_db(config)
    orchestrator = LifecycleOrchestrator(
        config,
        progress=lambda message: console.status(message, spinner="line"),
    )
    return config, orchestrator


def render_status_table(rows: list[dict]) -> Table:
    table = Table(title="Status Overview")
    for column in ("App", "Stage", "Port", "Listening", "Server", "Service", "Directory"):
        table.add_column(column)
    for row in rows:
        name = f"{row['name']} (current)" if row["current"] else row["name"]
        if not row["configured"]:
            table.add_row(name, "no config", "-", "-", "-", "-", "-")
            continue
        table.add_row(
            name,
            row["stage"],
            str(row["port"]),
            "yes" if row["port_bound"] else "no",
            row["server_type"],
            row["service"],
            row["app_dir"],
        )
    return table


class InteractiveMenu:
    """The numbered menu. Every action targets the current application."""

    def __init__(self, orchestrator: LifecycleOrchestrator):
        self.orchestrator = orchestrator
        self.actions: dict[str, Callable[[], None]] = {
            "1": self.manage_applications,
            "2": self.full_setup,
            "3": self.update_system_packages,
            "4": self.update_python_packages,
            "5": self.switch_server_mode,
            "6": self.change_port,
            "7": self.service_management,
            "8": self.firewall_status,
            "9": self.status_overview,
            "10": self.backup,
            "11": self.restore,
            "12": self.fix_permissions,
            "13": self.smoke_test,
            "14": self.nginx_management,
        }

    def _current_name(self) -> str:
        return self.orchestrator.index().current

    def banner(self):
        current = self.orchestrator.current()
        console.print(Panel.fit(
            "[bold]WEB STEWARD[/bold]\nMulti-App NGINX Deployment & Management Tool",
            border_style="magenta",
        ))
        setup = " [green](setup done)[/green]" if current.is_active else ""
        console.print(f"[bold]Application:[/bold] [green]{current.name}[/green]{setup}")
        console.print(f"Path: [cyan]{current.app_dir}[/cyan]")
        console.print(f"Service: [cyan]{current.service_name}.service[/cyan]")
        console.print(
            f"Port: [cyan]{current.port}[/cyan] | Server: [cyan]{current.server_type.value}[/cyan]"
            f" | Stage: [cyan]{current.stage.value}[/cyan]"
        )

    def print_menu(self):
        console.print()
        console.print("[bold]Menu:[/bold]")
        for key, label in MENU_ITEMS:
            console.print(f"  [bold]\\[{key}][/bold] {label}")

    def run(self) -> int:
        while True:
            console.print()
            self.banner()
            self.print_menu()
            choice = Prompt.ask("Select option (0-14)").strip()
            if choice == "0":
                log_info("Goodbye!")
                return 0
            action = self.actions.get(choice)
            if action is None:
                log_error("Invalid option")
                continue
            self.dispatch(action)
            Prompt.ask("Press Enter to return to menu", default="", show_default=False)

    def dispatch(self, action: Callable[[], None]):
        try:
            action()
        except StewardError as e:
            log_error(str(e))

    # [1] Applications

    def manage_applications(self):
        while True:
            index = self.orchestrator.index()
            console.print("[cyan]--- Manage Applications ---[/cyan]")
            for i, name in enumerate(index.names, start=1):
                if name == index.current:
                    console.print(f"[green]\\[{i}] {name} (current)[/green]")
                else:
                    console.print(f"\\[{i}] {name}")
            console.print("\na) Create new application\ni) Import existing application"
                          "\nd) Delete application\nb) Back")
            choice = Prompt.ask("Choice").strip().lower()
            if choice == "b":
                return
            if choice == "a":
                self.dispatch(self.create_application)
            elif choice == "i":
                self.dispatch(self.import_application)
            elif choice == "d":
                self.dispatch(self.delete_application)
            elif choice.isdigit():
                self.dispatch(lambda: report(
                    self.orchestrator.switch(self.orchestrator.resolve_selection(choice, index))
                ))
            else:
                log_error("Invalid option")

    def create_application(self):
        name = Prompt.ask("App name (alphanumeric _ -)").strip()
        report(self.orchestrator.create(name))

    def import_application(self):
        path = Prompt.ask("Absolute path to existing app dir").strip()
        found = self.orchestrator.detect_entry_points(path) if path else []
        if found:
            console.print("Detected files:")
            for entry in found:
                console.print(f" - {entry}")
        name = Prompt.ask("Name to register as (alphanumeric _ -)").strip()
        server_type = Prompt.ask("Server type", choices=["gunicorn", "flask"], default="gunicorn")
        while True:
            port = Prompt.ask("Port to use", default=str(self.orchestrator.config.default_port))
            check = self.orchestrator.allocator.validate(port, excluding=name)
            if check == PortCheck.VALID:
                break
            log_error(check.describe(port))
        provision = Confirm.ask("Create systemd service & nginx now?", default=True)
        report(self.orchestrator.import_app(path, name, server_type, port, provision=provision))

    def delete_application(self):
        index = self.orchestrator.index()
        for i, name in enumerate(index.names, start=1):
            console.print(f"\\[{i}] {name}")
        selection = Prompt.ask("Select number to delete").strip()
        name = self.orchestrator.resolve_selection(selection, index)
        if name == index.current:
            # Checked again by the orchestrator; this just avoids asking for confirmation.
            log_error("Cannot delete current app. Switch first.")
            return
        confirm = Confirm.ask(f"Confirm delete {name}", default=False)
        report(self.orchestrator.delete(name, confirm=confirm))

    # [2] Full setup

    def choose_port(self, name: str) -> tuple[str, int | None]:
        console.print("\n[cyan]=== Port Selection ===[/cyan]")
        for key, label, _ in PORT_MENU:
            console.print(f"{key}) {label}")
        choice = Prompt.ask("Choose (1-5)", default="1").strip()
        mode = next((m for k, _, m in PORT_MENU if k == choice), None)
        if mode is None:
            log_warn("Invalid, using default port")
            return "default", None
        if mode != "custom":
            return mode, None
        while True:
            port = Prompt.ask("Port (1024-65535)").strip()
            check = self.orchestrator.allocator.validate(port, excluding=name)
            if check == PortCheck.VALID:
                return mode, int(port)
            log_error(check.describe(port))

    def full_setup(self):
        name = self._current_name()
        mode, port = self.choose_port(name)
        report(self.orchestrator.full_setup(name, mode, port))

    # [3]-[6]

    def update_system_packages(self):
        report(self.orchestrator.update_system_packages())

    def update_python_packages(self):
        report(self.orchestrator.update_python_packages(self._current_name()))

    def switch_server_mode(self):
        server_type = Prompt.ask("Server", choices=["gunicorn", "flask"], default="gunicorn")
        report(self.orchestrator.set_server_type(self._current_name(), server_type))

    def change_port(self):
        port = Prompt.ask("New port").strip()
        report(self.orchestrator.change_port(self._current_name(), port))

    # [7]-[9]

    def service_management(self):
        name = self._current_name()
        app_record = self.orchestrator.registry.load_application(name)
        console.print(f"[cyan]--- Service Management ({app_record.service_name}.service) ---[/cyan]")
        actions = {"1": "start", "2": "stop", "3": "restart", "4": "status"}
        console.print("1) Start\n2) Stop\n3) Restart\n4) Status\n5) Back")
        choice = Prompt.ask("Choice").strip()
        if choice == "5":
            return
        if choice not in actions:
            log_error("Invalid option")
            return
        report(self.orchestrator.service_action(name, actions[choice]))

    def firewall_status(self):
        report(self.orchestrator.firewall_status())

    def status_overview(self):
        console.print(render_status_table(self.orchestrator.status_overview()))

    # [10]-[14]

    def backup(self):
        report(self.orchestrator.backup())

    def restore(self):
        log_info("Restore is a manual procedure:")
        console.print(self.orchestrator.restore_instructions(), markup=False)

    def fix_permissions(self):
        report(self.orchestrator.fix_permissions(self._current_name()))

    def smoke_test(self):
        log_info("Testing...")
        report(self.orchestrator.smoke_test(self._current_name()))

    def nginx_management(self):
        console.print("[cyan]--- Nginx Management ---[/cyan]")
        actions = {
            "1": "status",
            "2": "reload",
            "3": "test",
            "4": "list-enabled",
            "5": "list-available",
        }
        console.print("1) Show nginx status\n2) Reload nginx\n3) Test nginx configuration"
                      "\n4) List enabled sites\n5) List available sites\n6) Back")
        choice = Prompt.ask("Choice").strip()
        if choice == "6":
            return
        if choice not in actions:
            log_error("Invalid option")
            return
        outcome = self.orchestrator.nginx_admin(actions[choice])
        report(outcome)
        if "sites" in outcome.data:
            sites = outcome.data["sites"]
            console.print("\n".join(sites) if sites else "No sites")


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-V", help="Show the steward version and exit."),
) -> None:
    """Open the interactive menu when no subcommand is given."""
    if version:
        console.print(f"steward {__version__}")
        raise typer.Exit(code=0)
    if ctx.invoked_subcommand is None:
        ctx.invoke(menu)


@app.command()
def menu() -> None:
    """Interactive menu (the default)."""
    _, orchestrator = _bootstrap()
    try:
        with orchestrator.registry.lock():
            code = InteractiveMenu(orchestrator).run()
    except FatalStartupError as e:
        log_error(str(e))
        raise typer.Exit(code=1)
    except (KeyboardInterrupt, EOFError):
        console.print()
        log_info("Goodbye!")
        code = 0
    raise typer.Exit(code=code)


@app.command()
def status() -> None:
    """Print the fleet status overview."""
    _, orchestrator = _bootstrap()
    console.print(render_status_table(orchestrator.status_overview()))


@app.command()
def backup() -> None:
    """Archive the registry files."""
    _, orchestrator = _bootstrap()
    try:
        with orchestrator.registry.lock():
            outcome = orchestrator.backup()
    except FatalStartupError as e:
        log_error(str(e))
        raise typer.Exit(code=1)
    report(outcome)
    raise typer.Exit(code=0 if outcome.ok else 1)


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind address (default STEWARD_HOST)."),
    port: int = typer.Option(None, help="Bind port (default STEWARD_PORT)."),
) -> None:
    """Run the HTTP admin API."""
    import uvicorn

    try:
        ensure_unprivileged()
    except FatalStartupError as e:
        log_error(str(e))
        raise typer.Exit(code=1)
    config = load_config()
    uvicorn.run(
        "steward.main:app",
        host=host or config.host,
        port=port or config.port,
        reload=False,
    )


def main():
    app()


if __name__ == "__main__":
    main()
