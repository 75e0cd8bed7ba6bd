"""In-memory stand-ins for probers, terminators and the supervisor."""

from __future__ import annotations

import asyncio
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from devsupervisor.errors import LaunchFailureError, ProbeInconclusiveError, UnexpectedChildExitError
from devsupervisor.supervisor import RoleSpec

ProbeStep = Union[Iterable[int], Exception]


class FakePortProber:
    """Replays a scripted sequence of owner sets per port.

    The last scripted answer repeats once the script is used up. Ports
    without a script are free.
    """

    name = "fake"

    def __init__(self, scripts: Optional[Dict[int, Sequence[ProbeStep]]] = None) -> None:
        self._scripts: Dict[int, List[ProbeStep]] = {port: list(steps) for port, steps in (scripts or {}).items()}
        self.calls: List[int] = []

    def calls_for(self, port: int) -> int:
        return self.calls.count(port)

    async def owning_pids(self, port: int) -> FrozenSet[int]:
        self.calls.append(port)
        script = self._scripts.get(port)
        if not script:
            return frozenset()
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        return frozenset(step)


class ReleasingPortProber:
    """Reports ``pid`` on ``port`` until the paired terminator kills it."""

    name = "releasing"

    def __init__(self, owners: Dict[int, int]) -> None:
        self.owners = dict(owners)
        self.calls: List[int] = []

    async def owning_pids(self, port: int) -> FrozenSet[int]:
        self.calls.append(port)
        pid = self.owners.get(port)
        return frozenset({pid}) if pid is not None else frozenset()

    def release_pid(self, pid: int) -> None:
        self.owners = {port: owner for port, owner in self.owners.items() if owner != pid}


class FakeTerminator:
    def __init__(self, prober: Optional[ReleasingPortProber] = None, *, refuse: Iterable[int] = ()) -> None:
        self.killed: List[int] = []
        self._prober = prober
        self._refuse = set(refuse)

    def force_kill(self, pid: int) -> bool:
        self.killed.append(pid)
        if pid in self._refuse:
            return False
        if self._prober is not None:
            self._prober.release_pid(pid)
        return True


class SleepRecorder:
    """Drop-in for ``asyncio.sleep`` that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def inconclusive(port: int) -> ProbeInconclusiveError:
    return ProbeInconclusiveError.command_missing(port, "lsof")


class FakeHandle:
    def __init__(self, role: str, pid: int) -> None:
        self.role = role
        self.pid = pid
        self.alive = True


class FakeSupervisor:
    """Records launches and terminations; a role can be scripted to fail."""

    def __init__(self, *, fail_roles: Iterable[str] = ()) -> None:
        self.launched: List[str] = []
        self.terminated: List[str] = []
        self.terminate_all_calls = 0
        self._fail_roles = set(fail_roles)
        self._handles: Dict[str, FakeHandle] = {}
        self._failures: "asyncio.Queue[UnexpectedChildExitError]" = asyncio.Queue()
        self._next_pid = 4000

    @property
    def handles(self) -> Dict[str, FakeHandle]:
        return dict(self._handles)

    async def launch(self, spec: RoleSpec) -> FakeHandle:
        if spec.role in self._fail_roles:
            raise LaunchFailureError.not_found(spec.role, spec.command)
        self._next_pid += 1
        handle = FakeHandle(spec.role, self._next_pid)
        self._handles[spec.role] = handle
        self.launched.append(spec.role)
        return handle

    async def terminate_all(self, timeout: Optional[float] = None) -> None:
        self.terminate_all_calls += 1
        # Yield so concurrent shutdown callers interleave
        await asyncio.sleep(0)
        for handle in reversed(list(self._handles.values())):
            if handle.alive:
                handle.alive = False
                self.terminated.append(handle.role)

    def report_exit(self, role: str, returncode: int) -> None:
        handle = self._handles[role]
        handle.alive = False
        self._failures.put_nowait(UnexpectedChildExitError(role, returncode, handle.pid))

    async def next_failure(self) -> UnexpectedChildExitError:
        return await self._failures.get()
