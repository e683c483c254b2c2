"""Terminate a service's process tree: SIGTERM, grace period, then SIGKILL."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import psutil

logger = logging.getLogger(__name__)

RootWaiter = Callable[[float], Awaitable[bool]]

DEFAULT_FORCE_TIMEOUT_SECONDS = 5.0


@dataclass
class TerminationReport:
    """What happened while stopping one process tree."""

    pid: int
    graceful: bool = True
    force_killed: List[int] = field(default_factory=list)


def collect_descendants(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):  # policy_guard: allow-silent-handler
        return []


def signal_group(pid: int, sig: int) -> bool:
    """Signal the process group led by *pid*, falling back to the single process."""
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:  # policy_guard: allow-silent-handler
        pass
    except PermissionError:  # policy_guard: allow-silent-handler
        logger.debug("Not permitted to signal process group %s", pid)
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:  # policy_guard: allow-silent-handler
        return False


def _signal_processes(processes: List[psutil.Process], sig: int) -> None:
    for proc in processes:
        try:
            proc.send_signal(sig)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):  # policy_guard: allow-silent-handler
            continue
        except psutil.AccessDenied:  # policy_guard: allow-silent-handler
            logger.warning("Access denied while signalling process %s", proc.pid)


async def wait_for_foreign_pid(pid: int, timeout: float) -> bool:
    """Wait for a process that is not our child (an orphan from an earlier run)."""
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:  # policy_guard: allow-silent-handler
        return True
    try:
        await asyncio.to_thread(proc.wait, timeout)
    except psutil.TimeoutExpired:  # policy_guard: allow-silent-handler
        return False
    except psutil.NoSuchProcess:  # policy_guard: allow-silent-handler
        return True
    return True


async def terminate_process_tree(
    pid: int,
    *,
    service_name: str,
    graceful_timeout: float,
    force_timeout: float = DEFAULT_FORCE_TIMEOUT_SECONDS,
    wait_root: Optional[RootWaiter] = None,
) -> TerminationReport:
    """
    Stop *pid* and everything it spawned.

    The whole process group gets SIGTERM so shells forward nothing by hand.
    Descendants that left the group are signalled individually. Whatever is
    still alive after *graceful_timeout* is killed.

    Args:
        pid: Root process (also the process group id for supervised services)
        service_name: Name of the service for logging
        graceful_timeout: Seconds to wait after SIGTERM
        force_timeout: Seconds to wait after SIGKILL
        wait_root: Coroutine factory that waits for the root to exit; supervised
            children must be awaited through their asyncio handle

    Returns:
        TerminationReport for the tree

    Raises:
        RuntimeError: If the root process persists after SIGKILL
    """
    waiter = wait_root or (lambda timeout: wait_for_foreign_pid(pid, timeout))
    report = TerminationReport(pid=pid)
    descendants = collect_descendants(pid)

    logger.info("Stopping %s (pid %s, %d descendant(s))", service_name, pid, len(descendants))
    signal_group(pid, signal.SIGTERM)
    _signal_processes(descendants, signal.SIGTERM)

    if not await waiter(graceful_timeout):
        logger.warning("%s (pid %s) did not exit within %.1fs; sending SIGKILL", service_name, pid, graceful_timeout)
        report.graceful = False
        signal_group(pid, signal.SIGKILL)
        report.force_killed.append(pid)
        if not await waiter(force_timeout):
            raise RuntimeError(
                f"{service_name} process {pid} persisted after SIGKILL for {force_timeout}s; manual intervention required."
            )

    survivors = [proc for proc in descendants if _alive(proc)]
    if survivors:
        _, still_alive = await asyncio.to_thread(psutil.wait_procs, survivors, 0.5)
        for proc in still_alive:
            logger.warning("Killing leftover %s descendant %s", service_name, proc.pid)
        _signal_processes(still_alive, signal.SIGKILL)
        report.force_killed.extend(proc.pid for proc in still_alive)
    return report


def _alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:  # policy_guard: allow-silent-handler
        return False
