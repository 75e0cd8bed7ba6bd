"""Tests for the process supervisor, using short-lived Python children."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from devsupervisor.errors import LaunchFailureError
from devsupervisor.supervisor import ProcessSupervisor, RoleSpec

SLEEPER = (sys.executable, "-c", "import time; time.sleep(30)")


def _spec(role: str, command, cwd: Path, env=None) -> RoleSpec:
    return RoleSpec(role=role, command=tuple(command), cwd=cwd, env=env)


@pytest.mark.asyncio
async def test_launch_and_terminate(tmp_path) -> None:
    supervisor = ProcessSupervisor(terminate_timeout=5.0)
    handle = await supervisor.launch(_spec("backend", SLEEPER, tmp_path))

    assert handle.alive
    assert supervisor.handles == {"backend": handle}

    await supervisor.terminate(handle)

    assert not handle.alive
    assert handle.stop_requested
    # Second terminate is a no-op
    await supervisor.terminate(handle)
    await supervisor.terminate_all()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(supervisor.next_failure(), timeout=0.2)


@pytest.mark.asyncio
async def test_unexpected_exit_is_reported(tmp_path) -> None:
    supervisor = ProcessSupervisor()
    handle = await supervisor.launch(_spec("frontend", (sys.executable, "-c", "import sys; sys.exit(3)"), tmp_path))

    failure = await asyncio.wait_for(supervisor.next_failure(), timeout=10)

    assert failure.role == "frontend"
    assert failure.returncode == 3
    assert failure.pid == handle.pid
    assert "exited unexpectedly" in str(failure)


@pytest.mark.asyncio
async def test_clean_exit_is_still_unexpected(tmp_path) -> None:
    supervisor = ProcessSupervisor()
    await supervisor.launch(_spec("backend", (sys.executable, "-c", "pass"), tmp_path))

    failure = await asyncio.wait_for(supervisor.next_failure(), timeout=10)

    assert failure.returncode == 0


@pytest.mark.asyncio
async def test_role_environment_is_merged(tmp_path) -> None:
    supervisor = ProcessSupervisor()
    script = "import os, pathlib; pathlib.Path('api.txt').write_text(os.environ['VITE_API_BASE_URL'])"
    handle = await supervisor.launch(
        _spec("frontend", (sys.executable, "-c", script), tmp_path, env={"VITE_API_BASE_URL": "http://localhost:8081"})
    )

    assert await asyncio.wait_for(handle.process.wait(), timeout=10) == 0
    assert (tmp_path / "api.txt").read_text() == "http://localhost:8081"


@pytest.mark.asyncio
async def test_missing_executable_fails_launch(tmp_path) -> None:
    supervisor = ProcessSupervisor()

    with pytest.raises(LaunchFailureError, match="command not found") as excinfo:
        await supervisor.launch(_spec("backend", ("devsupervisor-no-such-binary", "run"), tmp_path))

    assert excinfo.value.role == "backend"
    assert supervisor.handles == {}


@pytest.mark.asyncio
async def test_empty_command_fails_launch(tmp_path) -> None:
    with pytest.raises(LaunchFailureError, match="empty command"):
        await ProcessSupervisor().launch(_spec("backend", (), tmp_path))


@pytest.mark.asyncio
async def test_role_cannot_run_twice(tmp_path) -> None:
    supervisor = ProcessSupervisor()
    await supervisor.launch(_spec("backend", SLEEPER, tmp_path))
    try:
        with pytest.raises(LaunchFailureError, match="already running"):
            await supervisor.launch(_spec("backend", SLEEPER, tmp_path))
    finally:
        await supervisor.terminate_all()


@pytest.mark.asyncio
async def test_terminate_all_stops_in_reverse_order(tmp_path, monkeypatch) -> None:
    supervisor = ProcessSupervisor()
    backend = await supervisor.launch(_spec("backend", SLEEPER, tmp_path))
    frontend = await supervisor.launch(_spec("frontend", SLEEPER, tmp_path))

    stopped = []
    real_terminate = supervisor.terminate

    async def recording_terminate(handle, timeout=None):
        stopped.append(handle.role)
        await real_terminate(handle, timeout)

    monkeypatch.setattr(supervisor, "terminate", recording_terminate)
    await supervisor.terminate_all()

    assert stopped == ["frontend", "backend"]
    assert not backend.alive and not frontend.alive


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform.startswith("win"), reason="SIGTERM cannot be ignored on Windows")
async def test_terminate_force_kills_after_timeout(tmp_path) -> None:
    marker = tmp_path / "ready"
    script = (
        "import pathlib, signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"pathlib.Path({str(marker)!r}).touch()\n"
        "time.sleep(30)\n"
    )
    supervisor = ProcessSupervisor()
    handle = await supervisor.launch(_spec("backend", (sys.executable, "-c", script), tmp_path))
    for _ in range(100):
        if marker.exists():
            break
        await asyncio.sleep(0.05)

    await supervisor.terminate(handle, timeout=0.5)

    assert not handle.alive
    assert handle.returncode is not None
