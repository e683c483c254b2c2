"""
Spawning and stopping service processes.

Services are exec'd directly (never through ``sh -c``) as leaders of their own
session, so a termination signal reaches the whole process group even when a
service's command is itself a wrapper script. Before every start the
supervisor reaps an orphan left behind by a crashed orchestrator and clears the
service's stale pid file.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

import psutil

from ..config import OrchestratorSettings
from ..errors import ProcessStartError
from ..instance import InstanceState, ServiceInstance
from ..registry.models import ServiceSpec
from .supervisor_helpers import (
    PidRecordStore,
    clear_stale_pid_file,
    open_service_log,
    terminate_process_tree,
)

logger = logging.getLogger(__name__)

EXIT_POLL_INTERVAL_SECONDS = 0.05

ExitCallback = Callable[[ServiceInstance, int, bool], None]
"""Called as ``(instance, returncode, expected)`` once a supervised process has exited."""


def _reaper(process: subprocess.Popen) -> Callable[[float], Awaitable[bool]]:
    """Wait for our own child through Popen so its exit status is not lost to psutil."""

    async def wait_root(timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while process.poll() is None:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(EXIT_POLL_INTERVAL_SECONDS)
        return True

    return wait_root


@dataclass(eq=False)
class _Supervised:
    instance: ServiceInstance
    process: subprocess.Popen
    stop_requested: bool = False
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    watcher: Optional[asyncio.Task] = None


class ProcessSupervisor:
    """Owns the OS processes behind service instances.

    The supervisor records ``pid`` and ``started_at`` on the instances it
    spawns and reports exits through ``on_exit``; lifecycle transitions stay
    with whoever drives the instance (the scheduler). ``start`` only sets the
    state itself when it creates the instance.
    """

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        *,
        on_exit: Optional[ExitCallback] = None,
        base_environment: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.pid_records = PidRecordStore(self.settings.pids_dir)
        self._on_exit = on_exit
        self._base_environment = dict(os.environ if base_environment is None else base_environment)
        self._entries: Dict[str, _Supervised] = {}

    def set_exit_callback(self, callback: Optional[ExitCallback]) -> None:
        self._on_exit = callback

    def active(self, service_name: str) -> Optional[ServiceInstance]:
        entry = self._entries.get(service_name)
        return entry.instance if entry is not None else None

    def running_names(self) -> List[str]:
        return list(self._entries)

    def is_alive(self, instance: ServiceInstance) -> bool:
        entry = self._entry_for(instance)
        return entry is not None and entry.process.poll() is None

    def _entry_for(self, instance: ServiceInstance) -> Optional[_Supervised]:
        entry = self._entries.get(instance.name)
        if entry is None or entry.instance is not instance:
            return None
        return entry

    def build_environment(self, spec: ServiceSpec) -> Dict[str, str]:
        env = dict(self._base_environment)
        env.update(spec.environment)
        return env

    async def start(self, spec: ServiceSpec, instance: Optional[ServiceInstance] = None) -> ServiceInstance:
        """
        Spawn the service's process.

        With *instance* (a Pending instance owned by the scheduler) the process
        details are recorded on it; otherwise a new instance is created in
        ``STARTING``. If the service already has a live, non-terminal instance
        that instance is returned unchanged.

        Raises:
            ProcessStartError: The executable or working directory is missing, or
                the service's pid file names a live process of the same program
        """
        existing = self._entries.get(spec.name)
        if existing is not None and existing.process.poll() is None and not existing.instance.is_terminal:
            logger.debug("%s already running (pid %s); start is a no-op", spec.name, existing.process.pid)
            return existing.instance

        try:
            await self._reap_orphan(spec)
        except RuntimeError as exc:
            raise ProcessStartError(spec.name, f"cannot stop orphaned process: {exc}") from exc
        pid_file = spec.resolved_pid_file()
        if pid_file is not None:
            clear_stale_pid_file(pid_file, service_name=spec.name, command=spec.command)

        attempt = instance.attempt if instance is not None else 1
        if spec.working_dir is not None and not spec.working_dir.is_dir():
            raise ProcessStartError(spec.name, f"working directory {spec.working_dir} does not exist")

        try:
            log_file = open_service_log(self.settings.logs_dir, spec.name, attempt=attempt, command=spec.command)
        except OSError as exc:
            raise ProcessStartError(spec.name, f"cannot open log in {self.settings.logs_dir}: {exc}") from exc

        # Popen rather than an asyncio transport: a transport kills its child when
        # closed, and services left running after an aborted startup must survive us.
        with log_file as log_handle:
            try:
                process = subprocess.Popen(
                    list(spec.command),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    cwd=str(spec.working_dir) if spec.working_dir is not None else None,
                    env=self.build_environment(spec),
                    start_new_session=True,
                )
            except (FileNotFoundError, PermissionError, NotADirectoryError) as exc:
                raise ProcessStartError(spec.name, f"cannot execute {spec.command[0]!r}: {exc.strerror or exc}") from exc
            except OSError as exc:
                raise ProcessStartError(spec.name, str(exc)) from exc

        try:
            self.pid_records.write(spec.name, process.pid, attempt=attempt, command=spec.command)
        except (OSError, psutil.Error) as exc:
            logger.error("Cannot record pid of %s; killing it", spec.name)
            await terminate_process_tree(process.pid, service_name=spec.name, graceful_timeout=0, wait_root=_reaper(process))
            raise ProcessStartError(spec.name, f"cannot record pid in {self.settings.pids_dir}: {exc}") from exc

        if instance is None:
            instance = ServiceInstance(spec=spec, attempt=attempt, state=InstanceState.STARTING)
        instance.pid = process.pid
        instance.started_at = time.time()
        instance.returncode = None
        entry = _Supervised(instance=instance, process=process)
        self._entries[spec.name] = entry
        entry.watcher = asyncio.create_task(self._watch(entry), name=f"devherd-exit-{spec.name}")
        logger.info("Started %s (pid %s, attempt %d): %s", spec.name, process.pid, attempt, " ".join(spec.command))
        return instance

    async def stop(self, instance: ServiceInstance, grace_period: Optional[float] = None) -> Optional[int]:
        """
        Terminate the instance's process tree and wait for it to exit.

        A no-op (returning the known return code) for instances whose process
        has already exited, which includes every Stopped instance.
        """
        entry = self._entry_for(instance)
        if entry is None:
            return instance.returncode
        if entry.process.poll() is not None:
            await entry.exited.wait()
            return entry.process.returncode

        entry.stop_requested = True
        grace = grace_period
        if grace is None:
            grace = instance.spec.grace_period_seconds or self.settings.shutdown.grace_period_seconds

        process = entry.process
        report = await terminate_process_tree(
            process.pid, service_name=instance.name, graceful_timeout=grace, wait_root=_reaper(process)
        )
        await entry.exited.wait()
        if not report.graceful:
            logger.warning("%s was force killed after %.1fs", instance.name, grace)
        return process.returncode

    async def restart(self, instance: ServiceInstance, grace_period: Optional[float] = None) -> ServiceInstance:
        """Stop the instance and start a fresh attempt of the same service."""
        await self.stop(instance, grace_period)
        successor = ServiceInstance(spec=instance.spec, attempt=instance.attempt + 1, state=InstanceState.STARTING)
        return await self.start(instance.spec, successor)

    async def stop_all(self, grace_period: Optional[float] = None) -> None:
        """Stop every live process concurrently (used on teardown paths only)."""
        entries = list(self._entries.values())
        if entries:
            await asyncio.gather(*(self.stop(entry.instance, grace_period) for entry in entries))

    async def _watch(self, entry: _Supervised) -> None:
        while entry.process.poll() is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL_SECONDS)
        returncode = entry.process.returncode
        instance = entry.instance
        instance.returncode = returncode
        self.pid_records.remove(instance.name, pid=entry.process.pid)
        if self._entries.get(instance.name) is entry:
            del self._entries[instance.name]

        expected = entry.stop_requested
        level = logging.INFO if expected or returncode == 0 else logging.WARNING
        logger.log(level, "%s (pid %s) exited with code %s%s", instance.name, entry.process.pid, returncode, "" if expected else " unexpectedly")
        entry.exited.set()
        if self._on_exit is not None:
            self._on_exit(instance, returncode, expected)

    async def _reap_orphan(self, spec: ServiceSpec) -> None:
        if spec.name in self._entries:
            return
        record = self.pid_records.read(spec.name)
        if record is None:
            return
        proc = record.live_process()
        if proc is not None:
            logger.warning("Terminating orphaned %s process %s from a previous run", spec.name, record.pid)
            await terminate_process_tree(
                record.pid,
                service_name=spec.name,
                graceful_timeout=spec.grace_period_seconds or self.settings.shutdown.grace_period_seconds,
            )
        self.pid_records.remove(spec.name)
