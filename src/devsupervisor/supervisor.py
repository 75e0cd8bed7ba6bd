"""
Supervision of the long-running development servers.

Each role (``backend``, ``frontend``) is launched without waiting for it to
finish, with the parent's standard streams so its logs stay visible. A watcher
task per role reports exits that were not requested by :meth:`terminate` on the
failure channel consumed by the lifecycle controller.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import psutil

from .errors import LaunchFailureError, UnexpectedChildExitError

logger = logging.getLogger(__name__)

DEFAULT_TERMINATE_TIMEOUT_SECONDS = 5.0
FORCE_KILL_TIMEOUT_SECONDS = 2.0


@dataclass(frozen=True)
class RoleSpec:
    """What to run for a supervised role and where."""

    role: str
    command: Sequence[str]
    cwd: Path
    env: Optional[Mapping[str, str]] = None

    def describe(self) -> str:
        return " ".join(self.command)


@dataclass
class ProcessHandle:
    """Live reference to a launched role."""

    role: str
    command: Sequence[str]
    process: asyncio.subprocess.Process
    stop_requested: bool = False
    watcher: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode


class ProcessSupervisor:
    """Launches roles, tracks one handle per role, and reports unexpected exits."""

    def __init__(self, *, terminate_timeout: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS) -> None:
        self.terminate_timeout = terminate_timeout
        self._handles: Dict[str, ProcessHandle] = {}
        self._failures: "asyncio.Queue[UnexpectedChildExitError]" = asyncio.Queue()

    @property
    def handles(self) -> Dict[str, ProcessHandle]:
        return dict(self._handles)

    async def launch(self, spec: RoleSpec) -> ProcessHandle:
        """
        Start ``spec`` and return as soon as the OS has created the process.

        Raises:
            LaunchFailureError: If the executable is missing, the OS refuses to
                start it, or the role already has a live process
        """
        existing = self._handles.get(spec.role)
        if existing is not None and existing.alive:
            raise LaunchFailureError.already_running(spec.role, spec.command, existing.pid)

        command = list(spec.command)
        if not command:
            raise LaunchFailureError(f"Failed to start {spec.role}: empty command", role=spec.role, command=command)
        executable = shutil.which(command[0], path=self._search_path(spec))
        if executable is None:
            raise LaunchFailureError.not_found(spec.role, command)

        env = None
        if spec.env:
            env = {**os.environ, **spec.env}

        logger.info("Starting %s: %s (cwd: %s)", spec.role, spec.describe(), spec.cwd)
        try:
            process = await asyncio.create_subprocess_exec(executable, *command[1:], cwd=str(spec.cwd), env=env)
        except OSError as exc:
            raise LaunchFailureError.os_error(spec.role, command, exc) from exc

        handle = ProcessHandle(role=spec.role, command=tuple(command), process=process)
        handle.watcher = asyncio.create_task(self._watch(handle), name=f"watch-{spec.role}")
        self._handles[spec.role] = handle
        logger.info("%s started (PID: %s)", spec.role, process.pid)
        return handle

    async def terminate(self, handle: ProcessHandle, timeout: Optional[float] = None) -> None:
        """
        Stop ``handle`` and its descendants. Stopping a dead handle is a no-op.

        Sends a graceful terminate first and force kills after ``timeout``.
        """
        handle.stop_requested = True
        if not handle.alive:
            logger.debug("%s (PID %s) already stopped", handle.role, handle.pid)
            return

        timeout = self.terminate_timeout if timeout is None else timeout
        descendants = _snapshot_descendants(handle.pid)

        logger.info("Stopping %s (PID: %s)", handle.role, handle.pid)
        try:
            handle.process.terminate()
        except ProcessLookupError:
            logger.debug("%s (PID %s) exited before terminate", handle.role, handle.pid)

        try:
            await asyncio.wait_for(handle.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop within %ss, force killing", handle.role, timeout)
            try:
                handle.process.kill()
            except ProcessLookupError:
                logger.debug("%s (PID %s) exited before kill", handle.role, handle.pid)
            await handle.process.wait()

        if descendants:
            await asyncio.to_thread(_stop_descendants, handle.role, descendants, timeout)
        logger.info("%s stopped (exit code: %s)", handle.role, handle.returncode)

    async def terminate_all(self, timeout: Optional[float] = None) -> None:
        """Terminate every tracked role, most recently launched first."""
        for handle in reversed(list(self._handles.values())):
            await self.terminate(handle, timeout)
        watchers = [handle.watcher for handle in self._handles.values() if handle.watcher is not None]
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

    async def next_failure(self) -> UnexpectedChildExitError:
        """Wait for the next role that exited on its own."""
        return await self._failures.get()

    async def _watch(self, handle: ProcessHandle) -> None:
        returncode = await handle.process.wait()
        if handle.stop_requested:
            return
        failure = UnexpectedChildExitError(handle.role, returncode, handle.pid)
        logger.error("%s", failure)
        self._failures.put_nowait(failure)

    @staticmethod
    def _search_path(spec: RoleSpec) -> Optional[str]:
        if spec.env and "PATH" in spec.env:
            return spec.env["PATH"]
        return None


def _snapshot_descendants(pid: int) -> List[psutil.Process]:
    """Children spawned by a role, e.g. the binary behind ``go run``."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    except psutil.AccessDenied:
        logger.debug("Cannot list children of PID %s", pid)
        return []


def _stop_descendants(role: str, descendants: List[psutil.Process], timeout: float) -> None:
    alive = []
    for proc in descendants:
        try:
            proc.terminate()
            alive.append(proc)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Could not stop %s child process %s: permission denied", role, proc.pid)

    _, still_alive = psutil.wait_procs(alive, timeout=timeout)
    for proc in still_alive:
        try:
            proc.kill()
            logger.warning("Force killed %s child process %s", role, proc.pid)
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning("Could not kill %s child process %s: permission denied", role, proc.pid)
    if still_alive:
        psutil.wait_procs(still_alive, timeout=FORCE_KILL_TIMEOUT_SECONDS)


__all__ = [
    "DEFAULT_TERMINATE_TIMEOUT_SECONDS",
    "ProcessHandle",
    "ProcessSupervisor",
    "RoleSpec",
]
