from __future__ import annotations

import socket
from contextlib import closing
from typing import Callable, Iterable

from .db import log_event
from .errors import NoAvailablePort
from .settings import settings


MIN_PORT = 1
MAX_PORT = 65535


def validate_port(port: int) -> None:
    if not MIN_PORT <= int(port) <= MAX_PORT:
        raise ValueError(f"Invalid port: {port}. Must be between {MIN_PORT} and {MAX_PORT}.")


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """Probe a host port by binding it. Racy by nature: the port may be taken right after."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        try:
            sock.bind((host, int(port)))
        except OSError:
            return False
    return True


def _next_port(port: int) -> int:
    return port + 1 if port < MAX_PORT else MIN_PORT


class PortResolver:
    """Maps desired host ports onto ports that are actually free right now."""

    def __init__(self, probe: Callable[[int], bool] = is_port_available, max_attempts: int | None = None):
        self._probe = probe
        self.max_attempts = max(1, int(max_attempts or settings.port_scan_attempts))

    def find_next_available(self, start: int, taken: Iterable[int] = ()) -> int:
        """Scan forward from ``start`` (wrapping past 65535) for a free port."""
        validate_port(start)
        skip = set(taken)
        port = start
        for _ in range(self.max_attempts):
            if port not in skip and self._probe(port):
                return port
            port = _next_port(port)
        raise NoAvailablePort(
            f"Could not find an available port after {self.max_attempts} attempts starting from {start}",
            operation="resolve_ports",
        )

    def resolve(self, desired: Iterable[int]) -> dict[int, int]:
        """Return ``{desired: actual}``; the desired port is kept whenever it is free.

        No host port is handed out twice within one call.
        """
        mapping: dict[int, int] = {}
        assigned: set[int] = set()
        for want in desired:
            want = int(want)
            validate_port(want)
            if want in mapping:
                continue
            if want not in assigned and self._probe(want):
                actual = want
            else:
                actual = self.find_next_available(_next_port(want), taken=assigned)
                log_event("INFO", f"Port {want} is not available. Using {actual} instead.")
            mapping[want] = actual
            assigned.add(actual)
        return mapping
