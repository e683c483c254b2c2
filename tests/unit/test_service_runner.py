"""Tests for the orchestrator lock and signal plumbing."""

import asyncio
import os
import signal

import pytest

from devherd.errors import OrchestratorAlreadyRunning
from devherd.service_runner import (
    EXIT_INTERRUPTED,
    OrchestratorLock,
    ShutdownSignal,
    orchestrator_guard,
    run_async_service,
)


def test_lock_is_exclusive_and_records_pid(tmp_path):
    lock_path = tmp_path / "rt" / "orchestrator.lock"

    with orchestrator_guard(lock_path):
        assert lock_path.read_text() == str(os.getpid())
        with pytest.raises(OrchestratorAlreadyRunning, match=f"PID {os.getpid()}"):
            OrchestratorLock(lock_path).acquire()

    assert not lock_path.exists()
    with orchestrator_guard(lock_path):
        pass


def test_release_twice_is_harmless(tmp_path):
    lock = OrchestratorLock(tmp_path / "orchestrator.lock")
    lock.acquire()
    lock.release()
    lock.release()


@pytest.mark.asyncio
async def test_shutdown_signal_exit_codes():
    interrupted = ShutdownSignal()
    terminated = ShutdownSignal()

    interrupted.trigger(signal.SIGINT)
    interrupted.trigger(signal.SIGTERM)
    terminated.trigger(signal.SIGTERM)

    assert await interrupted.wait() == EXIT_INTERRUPTED
    assert await terminated.wait() == 0
    assert ShutdownSignal().exit_code == 0


def test_run_async_service_delivers_sigterm(tmp_path):
    async def orchestrate(shutdown):
        asyncio.get_running_loop().call_later(0.05, os.kill, os.getpid(), signal.SIGTERM)
        return await asyncio.wait_for(shutdown.wait(), timeout=5)

    assert run_async_service(orchestrate, lock_path=tmp_path / "orchestrator.lock") == 0
    assert not (tmp_path / "orchestrator.lock").exists()
