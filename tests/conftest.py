"""Root pytest configuration and shared fixtures."""

from __future__ import annotations

import os

import pytest

from devherd.config import HealthSettings, OrchestratorSettings, ProxySettings, RestartSettings, ShutdownSettings
from devherd.config.runtime import reset_default_values
from tests.helpers.stack_helpers import FakeHealthChecker, FakeSupervisor


@pytest.fixture(autouse=True)
def _isolate_devherd_env(monkeypatch):
    """Keep DEVHERD_* variables and cached dotenv defaults out of every test."""
    for name in list(os.environ):
        if name.startswith("DEVHERD_"):
            monkeypatch.delenv(name, raising=False)
    reset_default_values()
    yield
    reset_default_values()


@pytest.fixture
def runtime_settings(tmp_path) -> OrchestratorSettings:
    """Fast settings rooted in a per-test runtime directory."""
    return OrchestratorSettings(
        runtime_dir=tmp_path / ".devherd",
        health=HealthSettings(interval_seconds=0.05, timeout_seconds=5.0, probe_timeout_seconds=1.0),
        proxy=ProxySettings(port=0, upstream_timeout_seconds=2.0, connect_timeout_seconds=1.0, retry_after_seconds=5),
        restart=RestartSettings(initial_delay=0.05, max_delay=0.2, reset_after_seconds=60.0),
        shutdown=ShutdownSettings(grace_period_seconds=2.0),
    )


@pytest.fixture
def fake_supervisor(runtime_settings) -> FakeSupervisor:
    return FakeSupervisor(runtime_settings)


@pytest.fixture
def fake_checker() -> FakeHealthChecker:
    return FakeHealthChecker()
