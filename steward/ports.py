"""
Port allocation.

A port is claimed when another registered application holds it or when the
host already has a listener on it. Claims are recomputed on every check.
"""

import errno
import logging
import socket
from enum import Enum
from typing import Callable

import psutil

from .registry import MAX_PORT, MIN_PORT, ApplicationRegistry, RegistryIndex

logger = logging.getLogger(__name__)

# Named ranges offered by the port chooser: (start, end) inclusive.
PORT_RANGES = {
    "auto-5000": (5000, 5100),
    "auto-8000": (8000, 8100),
}


class PortCheck(str, Enum):
    VALID = "valid"
    INVALID_FORMAT = "invalid_format"
    OUT_OF_RANGE = "out_of_range"
    USED_BY_OTHER_APP = "used_by_other_app"
    USED_BY_OS = "used_by_os"

    def describe(self, port) -> str:
        return {
            PortCheck.VALID: f"Port {port} is available",
            PortCheck.INVALID_FORMAT: f"'{port}' is not a valid port number",
            PortCheck.OUT_OF_RANGE: f"Port {port} is outside {MIN_PORT}-{MAX_PORT}",
            PortCheck.USED_BY_OTHER_APP: f"Port {port} is assigned to another application",
            PortCheck.USED_BY_OS: f"Port {port} is already in use on this host",
        }[self]


def _bind_refused(family: int, address: str, port: int) -> bool:
    sock = None
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.bind((address, port))
        return False
    except OSError as e:
        return e.errno in (errno.EADDRINUSE, errno.EACCES)
    finally:
        if sock is not None:
            sock.close()


def is_port_bound(port: int) -> bool:
    """True when the host has a TCP/UDP socket bound to port."""
    try:
        for conn in psutil.net_connections(kind="inet"):
            if conn.laddr and conn.laddr.port == port:
                if conn.status in (psutil.CONN_LISTEN, psutil.CONN_NONE):
                    return True
        return False
    except psutil.AccessDenied:
        logger.debug("psutil denied connection listing, probing with bind()")
    return _bind_refused(socket.AF_INET, "0.0.0.0", port)


class PortAllocator:
    """Validates and finds ports against the registry and the host."""

    def __init__(
        self,
        registry: ApplicationRegistry,
        is_bound: Callable[[int], bool] = is_port_bound,
    ):
        self.registry = registry
        self.is_bound = is_bound

    def _registry_ports(self, excluding: str | None, index: RegistryIndex | None) -> dict[int, str]:
        return {
            app.port: app.name
            for app in self.registry.applications(index)
            if app.name != excluding
        }

    def validate(
        self,
        candidate,
        excluding: str | None = None,
        index: RegistryIndex | None = None,
        check_os: bool = True,
    ) -> PortCheck:
        """Classify candidate as a port for the application named excluding."""
        if isinstance(candidate, bool):
            return PortCheck.INVALID_FORMAT
        if isinstance(candidate, int):
            port = candidate
        else:
            text = str(candidate).strip()
            if not (text.isascii() and text.isdigit()):
                return PortCheck.INVALID_FORMAT
            port = int(text)
        if port <= 0:
            return PortCheck.INVALID_FORMAT
        if port < MIN_PORT or port > MAX_PORT:
            return PortCheck.OUT_OF_RANGE

        owner = self._registry_ports(excluding, index).get(port)
        if owner is not None:
            logger.debug(f"Port {port} is held by '{owner}'")
            return PortCheck.USED_BY_OTHER_APP

        if check_os and self.is_bound(port):
            return PortCheck.USED_BY_OS

        return PortCheck.VALID

    def find_available(
        self,
        start: int,
        end: int,
        excluding: str | None = None,
        index: RegistryIndex | None = None,
    ) -> int | None:
        """First valid port in [start, end], or None when the range is exhausted."""
        taken = self._registry_ports(excluding, index)
        for port in range(max(start, MIN_PORT), min(end, MAX_PORT) + 1):
            if port in taken:
                continue
            if self.is_bound(port):
                continue
            return port
        logger.warning(f"No free port found in range {start}-{end}")
        return None

    def find_in_range(self, range_name: str, excluding: str | None = None, index: RegistryIndex | None = None) -> int | None:
        start, end = PORT_RANGES[range_name]
        return self.find_available(start, end, excluding, index)
