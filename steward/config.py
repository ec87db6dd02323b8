"""
Configuration for steward.

Loads settings from environment variables (and a .env file) into an immutable
snapshot. All persistent registry data is stored in ~/.steward/ by default.
"""

import getpass
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import FatalStartupError


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_path(name: str, default: Path) -> Path:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else default


@dataclass(frozen=True)
class Config:
    """Steward configuration snapshot."""

    # Paths
    data_dir: Path = Path.home() / ".steward"
    apps_root: Path = Path.home()
    backup_dir: Path = Path.home()

    # External targets
    systemd_dir: Path = Path("/etc/systemd/system")
    nginx_available_dir: Path = Path("/etc/nginx/sites-available")
    nginx_enabled_dir: Path = Path("/etc/nginx/sites-enabled")
    nginx_log_dir: Path = Path("/var/log/nginx")
    use_sudo: bool = True
    user: str = field(default_factory=getpass.getuser)

    # Applications
    default_port: int = 5000
    gunicorn_workers: int = 3
    python_packages: tuple[str, ...] = ("gunicorn", "flask")
    system_packages: tuple[str, ...] = ("python3-venv", "python3-pip", "nginx", "ufw", "unzip")

    # External command timeouts (seconds)
    command_timeout: int = 300
    package_timeout: int = 1800

    # HTTP admin API
    host: str = "127.0.0.1"
    port: int = 9901

    # Logging
    log_max_bytes: int = 10 * 1024 * 1024  # 10MB
    log_backup_count: int = 5
    history_retention_days: int = 30

    @property
    def apps_dir(self) -> Path:
        """Directory holding one JSON record per application."""
        return self.data_dir / "apps"

    @property
    def fleet_file(self) -> Path:
        return self.data_dir / "fleet.json"

    @property
    def lock_file(self) -> Path:
        return self.data_dir / "registry.lock"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "history.db"

    @property
    def log_file(self) -> Path:
        return self.data_dir / "steward.log"

    def ensure_dirs(self):
        """Create the data directories with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.apps_dir.mkdir(parents=True, exist_ok=True, mode=0o700)


def load_config(env_file: str | None = None, **overrides) -> Config:
    """Build a Config from the environment.

    Keyword overrides win over environment variables.
    """
    load_dotenv(env_file)

    home = Path.home()
    values = dict(
        data_dir=_env_path("STEWARD_DATA_DIR", home / ".steward"),
        apps_root=_env_path("STEWARD_APPS_ROOT", home),
        backup_dir=_env_path("STEWARD_BACKUP_DIR", home),
        systemd_dir=_env_path("SYSTEMD_DIR", Path("/etc/systemd/system")),
        nginx_available_dir=_env_path("NGINX_AVAILABLE_DIR", Path("/etc/nginx/sites-available")),
        nginx_enabled_dir=_env_path("NGINX_ENABLED_DIR", Path("/etc/nginx/sites-enabled")),
        nginx_log_dir=_env_path("NGINX_LOG_DIR", Path("/var/log/nginx")),
        use_sudo=_env_bool("STEWARD_USE_SUDO", "true"),
        user=os.environ.get("STEWARD_USER") or getpass.getuser(),
        default_port=int(os.environ.get("DEFAULT_PORT", "5000")),
        gunicorn_workers=int(os.environ.get("GUNICORN_WORKERS", "3")),
        python_packages=tuple(os.environ.get("PYTHON_PACKAGES", "gunicorn flask").split()),
        system_packages=tuple(
            os.environ.get("SYSTEM_PACKAGES", "python3-venv python3-pip nginx ufw unzip").split()
        ),
        command_timeout=int(os.environ.get("COMMAND_TIMEOUT", "300")),
        package_timeout=int(os.environ.get("PACKAGE_TIMEOUT", "1800")),
        host=os.environ.get("STEWARD_HOST", "127.0.0.1"),
        port=int(os.environ.get("STEWARD_PORT", "9901")),
        log_max_bytes=int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024))),
        log_backup_count=int(os.environ.get("LOG_BACKUP_COUNT", "5")),
        history_retention_days=int(os.environ.get("HISTORY_RETENTION_DAYS", "30")),
    )
    values.update(overrides)
    return Config(**values)


def ensure_unprivileged():
    """Refuse to run as root; steward escalates with sudo only where needed."""
    if hasattr(os, "geteuid") and os.geteuid() == 0:
        raise FatalStartupError(
            "Do not run steward as root. Run as a normal user; sudo is used when needed."
        )
