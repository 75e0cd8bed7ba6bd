"""Root pytest configuration and shared fixtures."""

from __future__ import annotations

import os

import pytest

from devsupervisor.config import runtime

from tests.helpers.fakes import FakeSupervisor, SleepRecorder


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep host DEV_* variables and .env files out of every test."""
    for name in list(os.environ):
        if name.startswith("DEV_") or name in {"VITE_API_BASE_URL", "LOG_APPEND"}:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(runtime, "_DEFAULT_VALUES", {})
    yield


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()
