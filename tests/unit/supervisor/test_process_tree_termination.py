"""Tests for terminating process trees."""

import subprocess
import sys

import psutil
import pytest

from devherd.supervisor.supervisor_helpers import signal_group, terminate_process_tree, wait_for_foreign_pid
from tests.helpers.stack_helpers import ignore_sigterm_command, sleeper_command, wait_for

PARENT_WITH_CHILD_SRC = (
    "import subprocess, sys, time\n"
    "child = subprocess.Popen([sys.executable, '-c', 'import time\\nwhile True: time.sleep(0.1)'])\n"
    "print(child.pid, flush=True)\n"
    "while True:\n"
    "    time.sleep(0.1)\n"
)


def _spawn(argv, **kwargs):
    return subprocess.Popen(list(argv), start_new_session=True, **kwargs)


def _gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.mark.asyncio
async def test_sigterm_stops_whole_group():
    parent = _spawn([sys.executable, "-c", PARENT_WITH_CHILD_SRC], stdout=subprocess.PIPE, text=True)
    child_pid = int(parent.stdout.readline())

    report = await terminate_process_tree(parent.pid, service_name="api", graceful_timeout=5.0)

    assert report.graceful is True
    assert parent.wait(timeout=5) is not None
    await wait_for(lambda: _gone(child_pid))
    parent.stdout.close()


@pytest.mark.asyncio
async def test_sigkill_after_grace_period():
    stubborn = _spawn(ignore_sigterm_command(), stdout=subprocess.PIPE, text=True)
    assert stubborn.stdout.readline().strip() == "ready"

    report = await terminate_process_tree(stubborn.pid, service_name="stubborn", graceful_timeout=0.3)

    assert report.graceful is False
    assert stubborn.pid in report.force_killed
    assert stubborn.wait(timeout=5) is not None
    stubborn.stdout.close()


@pytest.mark.asyncio
async def test_wait_for_foreign_pid_handles_missing_process():
    process = _spawn(sleeper_command())
    process.kill()
    process.wait()

    assert await wait_for_foreign_pid(process.pid, 0.1) is True
    assert signal_group(process.pid, 0) is False
