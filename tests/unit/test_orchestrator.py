"""Integration tests running a small real stack through the orchestrator."""

import asyncio
import signal
import sys

import aiohttp
import psutil
import pytest

from devherd.config_loader import build_stack
from devherd.orchestrator import Orchestrator, stop_stack
from devherd.service_runner import ShutdownSignal
from devherd.state_store import OrchestratorPhase, StateStore
from tests.helpers.stack_helpers import free_port, wait_for


def _gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _read_phase(settings):
    state = StateStore(settings.state_path).read()
    return state.phase if state else None


def _site(tmp_path):
    site = tmp_path / "site"
    (site / "api").mkdir(parents=True)
    (site / "api" / "index.html").write_text("hello from api\n")
    return site


@pytest.mark.asyncio
async def test_up_serves_through_proxy_and_stops_on_sigterm(tmp_path, runtime_settings):
    db_port, api_port = free_port(), free_port()
    payload = {
        "services": [
            {
                "name": "db",
                "command": [sys.executable, "-c", "import socket, sys, time\ns = socket.socket()\ns.bind(('127.0.0.1', int(sys.argv[1])))\ns.listen()\ntime.sleep(60)\n", str(db_port)],
                "port": db_port,
                "healthcheck": {"type": "tcp"},
            },
            {
                "name": "api",
                "command": [sys.executable, "-m", "http.server", str(api_port), "--bind", "127.0.0.1"],
                "working_dir": str(_site(tmp_path)),
                "depends_on": ["db"],
                "port": api_port,
                "route_prefix": "/api",
                "healthcheck": {"type": "http", "path": "/api/"},
            },
        ]
    }
    stack = build_stack(payload, base_dir=tmp_path, base_settings=runtime_settings)
    orchestrator = Orchestrator(stack)
    shutdown = ShutdownSignal()
    run = asyncio.create_task(orchestrator.run(shutdown))

    await wait_for(lambda: _read_phase(runtime_settings) == OrchestratorPhase.RUNNING or run.done(), timeout=20)
    assert not run.done()
    state = StateStore(runtime_settings.state_path).read()
    assert [record["state"] for record in state.services] == ["healthy", "healthy"]
    pids = [record["pid"] for record in state.services]

    async with aiohttp.ClientSession() as session:
        async with session.get(f"http://{state.proxy_address}/api/") as response:
            assert response.status == 200
            assert "hello from api" in await response.text()

    shutdown.trigger(signal.SIGTERM)
    assert await asyncio.wait_for(run, timeout=20) == 0
    assert orchestrator.scheduler.stop_order == ["api", "db"]
    assert _read_phase(runtime_settings) == OrchestratorPhase.STOPPED
    assert all(_gone(pid) for pid in pids)


@pytest.mark.asyncio
async def test_startup_abort_leaves_healthy_services_for_down(tmp_path, runtime_settings):
    payload = {
        "services": [
            {
                "name": "db",
                "command": [sys.executable, "-c", "import time\ntime.sleep(60)\n"],
                "healthcheck": {"type": "exec", "command": [sys.executable, "-c", "raise SystemExit(1)"], "ready_timeout_seconds": 0.5},
            },
            {"name": "cache", "command": [sys.executable, "-c", "import time\ntime.sleep(60)\n"]},
            {"name": "api", "command": [sys.executable, "-c", "import time\ntime.sleep(60)\n"], "depends_on": ["db", "cache"]},
        ]
    }
    stack = build_stack(payload, base_dir=tmp_path, base_settings=runtime_settings)
    orchestrator = Orchestrator(stack)

    exit_code = await asyncio.wait_for(orchestrator.run(ShutdownSignal()), timeout=20)

    assert exit_code == 1
    state = StateStore(runtime_settings.state_path).read()
    assert state.phase == OrchestratorPhase.ABORTED
    records = {record["name"]: record for record in state.services}
    assert records["db"]["state"] == "failed"
    assert records["cache"]["state"] == "healthy"
    assert records["api"]["blocked"] is True
    cache_pid = records["cache"]["pid"]
    assert psutil.pid_exists(cache_pid)

    stopped = await stop_stack(runtime_settings)

    assert "cache" in stopped
    await wait_for(lambda: _gone(cache_pid))
    assert _read_phase(runtime_settings) == OrchestratorPhase.STOPPED


@pytest.mark.asyncio
async def test_down_with_nothing_recorded(runtime_settings):
    assert await stop_stack(runtime_settings) == []
