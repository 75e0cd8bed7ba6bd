"""Error types raised by the port and process orchestration layers.

Every error names the resource it concerns (port, role or command) so the
operator-facing message is enough to act on.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence


class OrchestratorError(RuntimeError):
    """Base class for development stack orchestration failures."""


class ProbeInconclusiveError(OrchestratorError):
    """The operating system query for a port could not be executed or parsed.

    This never means the port is free.
    """

    def __init__(self, message: str, *, port: int, mechanism: str) -> None:
        super().__init__(message)
        self.port = port
        self.mechanism = mechanism

    @classmethod
    def command_missing(cls, port: int, command: str) -> "ProbeInconclusiveError":
        return cls(f"Cannot probe port {port}: {command!r} is not available", port=port, mechanism=command)

    @classmethod
    def command_failed(cls, port: int, command: str, returncode: Optional[int], detail: str = "") -> "ProbeInconclusiveError":
        msg = f"Cannot probe port {port}: {command!r} exited with status {returncode}"
        if detail:
            msg += f" ({detail})"
        return cls(msg, port=port, mechanism=command)

    @classmethod
    def unparsable_output(cls, port: int, command: str, line: str) -> "ProbeInconclusiveError":
        return cls(f"Cannot probe port {port}: unexpected {command!r} output {line!r}", port=port, mechanism=command)


class ReclaimExhaustedError(OrchestratorError):
    """The retry budget ran out before the port(s) were observed free."""

    def __init__(self, message: str, *, ports: Sequence[int]) -> None:
        super().__init__(message)
        self.ports = tuple(ports)

    @classmethod
    def for_port(cls, port: int, attempts: int) -> "ReclaimExhaustedError":
        return cls(f"Port {port} is still in use after {attempts} reclaim attempt(s)", ports=(port,))

    @classmethod
    def for_ports(cls, ports: Iterable[int]) -> "ReclaimExhaustedError":
        ports = tuple(ports)
        listed = ", ".join(str(port) for port in ports)
        return cls(
            f"Unable to free required port(s) {listed}. Please check running processes manually.",
            ports=ports,
        )


class LaunchFailureError(OrchestratorError):
    """The operating system could not start a supervised role."""

    def __init__(self, message: str, *, role: str, command: Sequence[str]) -> None:
        super().__init__(message)
        self.role = role
        self.command = tuple(command)

    @classmethod
    def not_found(cls, role: str, command: Sequence[str]) -> "LaunchFailureError":
        return cls(f"Failed to start {role}: command not found: {command[0]!r}", role=role, command=command)

    @classmethod
    def os_error(cls, role: str, command: Sequence[str], exc: OSError) -> "LaunchFailureError":
        return cls(f"Failed to start {role} ({' '.join(command)}): {exc}", role=role, command=command)

    @classmethod
    def already_running(cls, role: str, command: Sequence[str], pid: int) -> "LaunchFailureError":
        return cls(f"Role {role} is already running (PID {pid})", role=role, command=command)


class UnexpectedChildExitError(OrchestratorError):
    """A supervised role exited without a shutdown having been requested."""

    def __init__(self, role: str, returncode: Optional[int], pid: int) -> None:
        super().__init__(f"{role} (PID {pid}) exited unexpectedly with status {returncode}")
        self.role = role
        self.returncode = returncode
        self.pid = pid


__all__ = [
    "LaunchFailureError",
    "OrchestratorError",
    "ProbeInconclusiveError",
    "ReclaimExhaustedError",
    "UnexpectedChildExitError",
]
