"""Forced termination of processes found holding a managed port."""

import logging
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)


class ProcessTerminator(Protocol):
    def force_kill(self, pid: int) -> bool:
        """Request forced termination of ``pid``; True when it is gone or going."""
        ...


class PsutilProcessTerminator:
    """Sends SIGKILL (TerminateProcess on Windows) through psutil.

    Requests are fire-and-forget. Whether the port was actually released is
    confirmed separately by re-probing it.
    """

    def force_kill(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            name = _process_name(proc)
            proc.kill()
        except psutil.NoSuchProcess:
            # Exited between the probe and the kill
            logger.debug("Process %s already exited", pid)
            return True
        except psutil.AccessDenied:
            logger.warning("Could not kill process %s: permission denied", pid)
            return False
        logger.info("Killed process %s (%s)", pid, name)
        return True


def _process_name(proc: psutil.Process) -> str:
    try:
        return proc.name()
    except psutil.AccessDenied:
        # Log-only; the kill is still attempted
        return "unknown"


__all__ = ["ProcessTerminator", "PsutilProcessTerminator"]
