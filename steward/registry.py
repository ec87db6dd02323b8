"""
Application registry.

The fleet index (ordered names plus the current selection) lives in
fleet.json; each application's record lives in apps/<name>.json. Every write
replaces the whole file atomically with owner-only permissions, so a reader
sees either the previous record or the new one, never a mix.
"""

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as SchemaError

from .config import Config
from .errors import RegistryLockedError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_APP = "default"
SERVICE_PREFIX = "steward_app_"
NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
MIN_PORT = 1024
MAX_PORT = 65535


class Stage(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROVISIONED = "provisioned"
    ACTIVE = "active"


class ServerType(str, Enum):
    GUNICORN = "gunicorn"
    FLASK = "flask"


def validate_name(name: str) -> str:
    """Raise ValidationError unless name is a legal application name."""
    if not name or not NAME_PATTERN.fullmatch(name):
        raise ValidationError(f"Invalid application name '{name}' (use letters, digits, _ and -)")
    return name


class Application(BaseModel):
    """Declared configuration of one managed application."""

    name: str
    app_dir: Path
    venv_dir: Path
    service_name: str
    nginx_config: Path
    server_type: ServerType = ServerType.GUNICORN
    port: int = Field(5000, ge=MIN_PORT, le=MAX_PORT)
    stage: Stage = Stage.UNINITIALIZED
    entry_module: str = "app"
    managed_dir: bool = True  # False when app_dir was imported, not created by steward

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not NAME_PATTERN.fullmatch(value):
            raise ValueError(f"invalid application name: {value!r}")
        return value

    @property
    def is_active(self) -> bool:
        return self.stage == Stage.ACTIVE


class RegistryIndex(BaseModel):
    """Ordered application names plus the current selection."""

    current: str = DEFAULT_APP
    names: list[str] = Field(default_factory=lambda: [DEFAULT_APP])

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def add(self, name: str):
        if name not in self.names:
            self.names.append(name)

    def remove(self, name: str):
        self.names = [n for n in self.names if n != name]
        if not self.names:
            self.names = [DEFAULT_APP]
        if self.current not in self.names:
            self.current = self.names[0]


def _atomic_write(path: Path, text: str):
    """Replace path with text via a 0600 temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class ApplicationRegistry:
    """Durable store of fleet membership and per-application records."""

    def __init__(self, config: Config):
        self.config = config

    def record_path(self, name: str) -> Path:
        return self.config.apps_dir / f"{name}.json"

    # Index

    def load(self) -> RegistryIndex:
        """Load the fleet index, creating the default one on first use."""
        path = self.config.fleet_file
        if not path.exists():
            index = RegistryIndex()
            self.save_index(index)
            return index

        try:
            index = RegistryIndex.model_validate_json(path.read_text())
        except SchemaError as e:
            corrupt = path.with_suffix(".json.corrupt")
            os.replace(path, corrupt)
            logger.error(f"Fleet index {path} is unreadable, moved to {corrupt}: {e}")
            index = self._rebuild_index()
            self.save_index(index)
            return index

        if not index.names:
            index.names = [DEFAULT_APP]
        if index.current not in index.names:
            logger.warning(f"Current application '{index.current}' is not registered, using '{index.names[0]}'")
            index.current = index.names[0]
            self.save_index(index)
        return index

    def _rebuild_index(self) -> RegistryIndex:
        """Index every record file on disk, so no record's port goes unclaimed."""
        names = sorted(
            p.stem for p in self.config.apps_dir.glob("*.json")
            if NAME_PATTERN.fullmatch(p.stem)
        ) if self.config.apps_dir.is_dir() else []
        if not names:
            return RegistryIndex()
        current = DEFAULT_APP if DEFAULT_APP in names else names[0]
        logger.warning(f"Rebuilt fleet index from records: {', '.join(names)}")
        return RegistryIndex(current=current, names=names)

    def save_index(self, index: RegistryIndex):
        _atomic_write(self.config.fleet_file, index.model_dump_json(indent=2) + "\n")

    # Records

    def get(self, name: str) -> Application | None:
        """Read a persisted record without materializing anything."""
        path = self.record_path(name)
        if not path.exists():
            return None
        try:
            return Application.model_validate_json(path.read_text())
        except (SchemaError, OSError) as e:
            logger.error(f"Record for '{name}' at {path} is unreadable: {e}")
            return None

    def load_application(self, name: str) -> Application:
        """Return the record for name, materializing the default on first touch."""
        app = self.get(name)
        if app is not None:
            return app

        path = self.record_path(name)
        if path.exists():
            corrupt = path.with_suffix(".json.corrupt")
            os.replace(path, corrupt)
            logger.warning(f"Moved unreadable record to {corrupt}")

        app = self.default_application(name)
        self.save(app)
        logger.info(f"Materialized default record for '{name}' on port {app.port}")
        return app

    def default_application(self, name: str, port: int | None = None) -> Application:
        """Deterministic default record for name."""
        service_name = f"{SERVICE_PREFIX}{name}"
        app_dir = self.config.apps_root / service_name
        return Application(
            name=name,
            app_dir=app_dir,
            venv_dir=app_dir / "venv",
            service_name=service_name,
            nginx_config=self.config.nginx_available_dir / service_name,
            port=port if port is not None else self._unclaimed_port(name),
        )

    def _unclaimed_port(self, name: str) -> int:
        """Lowest port from the default upward that no other record holds."""
        taken = {a.port for a in self.applications() if a.name != name}
        port = self.config.default_port
        while port in taken and port < MAX_PORT:
            port += 1
        return port

    def save(self, app: Application):
        _atomic_write(self.record_path(app.name), app.model_dump_json(indent=2) + "\n")

    def delete_record(self, name: str) -> bool:
        path = self.record_path(name)
        if not path.exists():
            return False
        path.unlink()
        return True

    def applications(self, index: RegistryIndex | None = None) -> list[Application]:
        """Persisted records for every indexed name, in index order."""
        if index is None:
            if not self.config.fleet_file.exists():
                return []
            index = self.load()
        apps = []
        for name in index.names:
            app = self.get(name)
            if app is not None:
                apps.append(app)
        return apps

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the single-writer registry lock, failing fast if it is taken."""
        self.config.ensure_dirs()
        handle = open(self.config.lock_file, "a")
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise RegistryLockedError(
                    f"Another steward process holds {self.config.lock_file}"
                ) from None
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
