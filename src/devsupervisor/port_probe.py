"""
Port occupancy probing.

A prober answers one question: which process ids currently listen on a TCP
port. Three interchangeable implementations exist and one is chosen at
startup by :func:`select_port_prober`:

- ``LsofPortProber`` for macOS/Linux hosts with ``lsof`` installed
- ``NetstatPortProber`` for Windows
- ``PsutilPortProber`` everywhere else

A clean "nothing listening" answer is an empty set, never an error.
``ProbeInconclusiveError`` is raised only when the query itself cannot run or
its output cannot be understood; callers resolve that through a
:class:`ProbeFailurePolicy` instead of assuming the port is free.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from enum import Enum
from typing import Callable, FrozenSet, Optional, Protocol, Sequence

import psutil

from .errors import ProbeInconclusiveError

logger = logging.getLogger(__name__)

# lsof exits with status 1 when no open file matched the selection
_LSOF_NO_MATCH = 1
_NETSTAT_LISTENING = "LISTENING"
_WINDOWS_IDLE_PID = 0


class ProbeFailurePolicy(str, Enum):
    """How an inconclusive probe is interpreted."""

    OCCUPIED = "occupied"
    FREE = "free"


class PortProber(Protocol):
    """Minimal contract shared by all probers."""

    name: str

    async def owning_pids(self, port: int) -> FrozenSet[int]:
        """Return the ids of processes listening on ``port``."""
        ...


async def _run_query(argv: Sequence[str], port: int) -> tuple[Optional[int], str, str]:
    """Run a system query command and capture its output."""
    command = argv[0]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ProbeInconclusiveError.command_missing(port, command) from exc
    except OSError as exc:
        raise ProbeInconclusiveError.command_failed(port, command, None, str(exc)) from exc

    stdout, stderr = await proc.communicate()
    return (
        proc.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


class LsofPortProber:
    """Queries ``lsof`` for processes holding a listening TCP socket."""

    name = "lsof"

    def __init__(self, executable: str = "lsof") -> None:
        self.executable = executable

    def build_command(self, port: int) -> list[str]:
        return [self.executable, "-nP", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"]

    async def owning_pids(self, port: int) -> FrozenSet[int]:
        returncode, stdout, stderr = await _run_query(self.build_command(port), port)
        if returncode not in (0, _LSOF_NO_MATCH):
            raise ProbeInconclusiveError.command_failed(port, self.name, returncode, stderr.strip())
        if returncode == _LSOF_NO_MATCH and not stdout.strip():
            return frozenset()
        return self.parse_output(port, stdout)

    def parse_output(self, port: int, stdout: str) -> FrozenSet[int]:
        """``lsof -t`` prints one PID per line."""
        pids = set()
        for line in stdout.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            if not stripped.isdigit():
                raise ProbeInconclusiveError.unparsable_output(port, self.name, stripped)
            pids.add(int(stripped))
        return frozenset(pids)


class NetstatPortProber:
    """Parses ``netstat -ano`` output on Windows."""

    name = "netstat"

    def __init__(self, executable: str = "netstat") -> None:
        self.executable = executable

    def build_command(self, port: int) -> list[str]:
        return [self.executable, "-ano", "-p", "TCP"]

    async def owning_pids(self, port: int) -> FrozenSet[int]:
        returncode, stdout, stderr = await _run_query(self.build_command(port), port)
        if returncode != 0:
            raise ProbeInconclusiveError.command_failed(port, self.name, returncode, stderr.strip())
        return self.parse_output(port, stdout)

    def parse_output(self, port: int, stdout: str) -> FrozenSet[int]:
        """
        Collect PIDs from rows like ``TCP  0.0.0.0:5173  0.0.0.0:0  LISTENING  1234``.

        Only the local address column is matched, so clients connected to the
        port from elsewhere are never reported as owners.
        """
        suffix = f":{port}"
        pids = set()
        for line in stdout.splitlines():
            parts = line.split()
            if len(parts) < 5 or parts[0].upper() != "TCP":
                continue
            local_address, state, raw_pid = parts[1], parts[3], parts[-1]
            if not local_address.endswith(suffix) or state.upper() != _NETSTAT_LISTENING:
                continue
            if not raw_pid.isdigit():
                raise ProbeInconclusiveError.unparsable_output(port, self.name, line.strip())
            pid = int(raw_pid)
            if pid != _WINDOWS_IDLE_PID:
                pids.add(pid)
        return frozenset(pids)


class PsutilPortProber:
    """Reads the kernel connection table through psutil."""

    name = "psutil"

    async def owning_pids(self, port: int) -> FrozenSet[int]:
        return await asyncio.to_thread(self._scan, port)

    def _scan(self, port: int) -> FrozenSet[int]:
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied as exc:
            raise ProbeInconclusiveError(
                f"Cannot probe port {port}: access denied reading the connection table",
                port=port,
                mechanism=self.name,
            ) from exc

        pids = set()
        for conn in connections:
            if not conn.laddr or conn.laddr.port != port or conn.status != psutil.CONN_LISTEN:
                continue
            if conn.pid is None:
                # Listener exists but its owner is hidden from this user
                raise ProbeInconclusiveError(
                    f"Cannot probe port {port}: listener owner is not visible to this user",
                    port=port,
                    mechanism=self.name,
                )
            pids.add(conn.pid)
        return frozenset(pids)


_PROBERS = {
    LsofPortProber.name: LsofPortProber,
    NetstatPortProber.name: NetstatPortProber,
    PsutilPortProber.name: PsutilPortProber,
}
PROBER_NAMES = tuple(sorted(_PROBERS))


def select_port_prober(
    preferred: Optional[str] = None,
    *,
    platform: Optional[str] = None,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> PortProber:
    """
    Pick the prober for this host.

    Args:
        preferred: Explicit prober name (``lsof``, ``netstat`` or ``psutil``)
        platform: Override for ``sys.platform``
        which: Executable lookup, ``shutil.which`` by default

    Raises:
        ValueError: If ``preferred`` names an unknown prober
    """
    if preferred:
        try:
            prober_cls = _PROBERS[preferred]
        except KeyError as exc:
            raise ValueError(f"Unknown port prober {preferred!r}. Known probers: {sorted(_PROBERS)}") from exc
        prober = prober_cls()
    else:
        platform = platform or sys.platform
        if platform.startswith("win"):
            prober = NetstatPortProber()
        elif which(LsofPortProber.name):
            prober = LsofPortProber()
        else:
            prober = PsutilPortProber()

    logger.debug("Using %s port prober", prober.name)
    return prober


async def is_port_occupied(
    prober: PortProber,
    port: int,
    policy: ProbeFailurePolicy = ProbeFailurePolicy.OCCUPIED,
) -> bool:
    """Return True iff any process owns ``port``; inconclusive reads follow ``policy``."""
    try:
        return bool(await prober.owning_pids(port))
    except ProbeInconclusiveError as exc:
        logger.warning("%s; treating port %s as %s", exc, port, policy.value)
        return policy is ProbeFailurePolicy.OCCUPIED


__all__ = [
    "PROBER_NAMES",
    "LsofPortProber",
    "NetstatPortProber",
    "PortProber",
    "ProbeFailurePolicy",
    "PsutilPortProber",
    "is_port_occupied",
    "select_port_prober",
]
