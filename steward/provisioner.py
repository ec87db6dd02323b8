"""
systemd and nginx provisioning for a single application.

Generates the unit file and the nginx site from Jinja2 templates and applies
them. Rendering is deterministic, so applying twice with the same record
leaves byte-identical files. Firewall rules are fleet-wide and live in
fleet.py instead.
"""

import logging

from jinja2 import Environment, PackageLoader, StrictUndefined

from .commands import NginxController, SystemdController
from .config import Config
from .outcome import WorkflowOutcome
from .registry import Application, ServerType

logger = logging.getLogger(__name__)

_templates = Environment(
    loader=PackageLoader("steward", "templates"),
    keep_trailing_newline=True,
    undefined=StrictUndefined,
    autoescape=False,
)


def exec_start(app: Application, workers: int = 3) -> str:
    """The ExecStart line for the application's server type."""
    bin_dir = app.venv_dir / "bin"
    if app.server_type == ServerType.FLASK:
        return f"{bin_dir}/flask --app {app.entry_module} run --host 127.0.0.1 --port {app.port}"
    return f"{bin_dir}/gunicorn -w {workers} -b 127.0.0.1:{app.port} {app.entry_module}:app"


def render_unit(app: Application, config: Config) -> str:
    """Generate the systemd unit for app."""
    return _templates.get_template("systemd.service.j2").render(
        app=app,
        user=config.user,
        exec_start=exec_start(app, config.gunicorn_workers),
    )


def render_site(app: Application, config: Config) -> str:
    """Generate the nginx server block proxying to the app's loopback port."""
    return _templates.get_template("nginx_site.conf.j2").render(
        app=app,
        log_dir=config.nginx_log_dir,
    )


def render_scaffold(app: Application) -> str:
    """Minimal Flask entry point written into new application directories."""
    return _templates.get_template("app.py.j2").render(app=app)


class ResourceProvisioner:
    """Applies and removes the per-application external artifacts."""

    def __init__(self, config: Config, systemd: SystemdController, nginx: NginxController):
        self.config = config
        self.systemd = systemd
        self.nginx = nginx

    def apply_service_unit(self, app: Application, outcome: WorkflowOutcome) -> bool:
        """Write the unit, reload systemd and enable it. Starting is left to the caller."""
        path = self.systemd.unit_path(app.service_name)
        logger.info(f"Creating systemd service {path.name}")

        if not outcome.check(self.systemd.write_unit(app.service_name, render_unit(app, self.config)),
                             f"Writing {path}"):
            return False
        outcome.check(self.systemd.daemon_reload(), "systemctl daemon-reload")
        outcome.check(self.systemd.enable(app.service_name), f"Enabling {path.name}")
        outcome.info(f"Systemd unit {path.name} created and enabled")
        return True

    def apply_proxy_site(self, app: Application, outcome: WorkflowOutcome) -> bool:
        """Write the nginx site, link it into sites-enabled and syntax-check nginx."""
        path = app.nginx_config
        logger.info(f"Creating nginx site {path} (proxy to 127.0.0.1:{app.port})")

        if not outcome.check(self.nginx.write_site(path, render_site(app, self.config)),
                             f"Writing {path}"):
            return False
        outcome.check(self.nginx.link_site(path), f"Enabling site {path.name}")

        test = self.nginx.test_config()
        if not test.ok:
            outcome.warn(f"nginx -t reported issues, fix and reload nginx manually: {test.describe()}")
        outcome.info(f"Nginx site {app.service_name} created and enabled")
        return True

    def apply(self, app: Application, outcome: WorkflowOutcome) -> bool:
        unit_ok = self.apply_service_unit(app, outcome)
        site_ok = self.apply_proxy_site(app, outcome)
        return unit_ok and site_ok

    def teardown(self, app: Application, outcome: WorkflowOutcome):
        """Stop the unit and remove every artifact steward created for app."""
        name = app.service_name
        outcome.check(self.systemd.stop(name), f"Stopping {name}")
        outcome.check(self.systemd.disable(name), f"Disabling {name}")
        outcome.check(self.systemd.remove_unit(name), f"Removing unit {name}.service")
        outcome.check(self.nginx.unlink_site(app.nginx_config), f"Removing enabled site {app.nginx_config.name}")
        outcome.check(self.nginx.remove_site(app.nginx_config), f"Removing available site {app.nginx_config}")
