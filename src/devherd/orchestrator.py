"""Wires registry, supervisor, scheduler, proxy and state file into the ``up``/``down`` flows."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import List, Optional

from .config import OrchestratorSettings, env_bool
from .config_loader import StackDefinition
from .errors import StartupAbortedError
from .health import HealthChecker
from .instance import ServiceInstance
from .proxy import ReverseProxy, RouteTable, RouteTableHolder
from .scheduler import DependencyScheduler
from .service_runner import ShutdownSignal
from .state_store import OrchestratorPhase, RuntimeState, StateStore, process_matches
from .supervisor import ProcessSupervisor
from .supervisor.supervisor_helpers import PidRecordStore, terminate_process_tree, truncate_logs

logger = logging.getLogger(__name__)

EXIT_STARTUP_ABORTED = 1

_DOWN_POLL_SECONDS = 0.2


class Orchestrator:
    """One ``up`` run: start the stack, serve the proxy, stop on a signal."""

    def __init__(self, stack: StackDefinition, *, enable_proxy: bool = True) -> None:
        self.stack = stack
        self.settings: OrchestratorSettings = stack.settings
        self.registry = stack.registry
        self.supervisor = ProcessSupervisor(self.settings)
        self.scheduler = DependencyScheduler(
            self.registry, self.supervisor, HealthChecker(self.settings.health), self.settings
        )
        self.routes = RouteTableHolder(RouteTable.build(self.registry, set()))
        self.proxy: Optional[ReverseProxy] = ReverseProxy(self.routes, self.settings.proxy) if enable_proxy and self.registry.routed() else None
        self.state_store = StateStore(self.settings.state_path)
        self.state = RuntimeState.for_current_process(
            OrchestratorPhase.STARTING,
            definition=str(stack.path) if stack.path else None,
            shutdown_waves=[list(wave) for wave in self.scheduler.plan.shutdown_waves()],
        )
        self.scheduler.add_listener(self._on_state_change)

    def _on_state_change(self, instance: ServiceInstance) -> None:
        self.routes.publish_from(self.registry, self.scheduler.healthy_names())
        self._write_state()

    def _write_state(self, phase: Optional[str] = None) -> None:
        if phase is not None:
            self.state.phase = phase
        self.state.services = self.scheduler.snapshot()
        self.state_store.write(self.state)

    async def run(self, shutdown: ShutdownSignal) -> int:
        """Start everything, then block until *shutdown* fires. Returns the exit code."""
        if not env_bool("DEVHERD_LOG_APPEND", or_value=False):
            truncate_logs(self.settings.logs_dir, self.registry.names)
        self._write_state()

        startup = asyncio.create_task(self.scheduler.start(), name="devherd-startup")
        signalled = asyncio.create_task(shutdown.wait(), name="devherd-signal")
        await asyncio.wait({startup, signalled}, return_when=asyncio.FIRST_COMPLETED)

        if not startup.done():
            logger.info("Shutdown requested during startup")
            await self._stop()
            await asyncio.gather(startup, return_exceptions=True)
            return shutdown.exit_code

        try:
            startup.result()
        except StartupAbortedError as exc:
            signalled.cancel()
            return await self._abort(exc)

        if self.proxy is not None:
            try:
                await self.proxy.start()
            except OSError as exc:
                logger.error("Cannot listen on %s:%d: %s", self.settings.proxy.host, self.settings.proxy.port, exc)
                signalled.cancel()
                await self._stop()
                return EXIT_STARTUP_ABORTED
            self.state.proxy_address = f"{self.settings.proxy.host}:{self.proxy.port}"
        self._write_state(OrchestratorPhase.RUNNING)
        logger.info("Stack is up (%d service(s))", len(self.registry))

        exit_code = await signalled
        await self._stop()
        return exit_code

    async def _abort(self, error: StartupAbortedError) -> int:
        running = sorted(self.scheduler.healthy_names())
        logger.error("%s", error)
        if running:
            logger.error("Left running: %s (stop them with `devherd down`)", ", ".join(running))
        await self.scheduler.detach()
        self._write_state(OrchestratorPhase.ABORTED)
        return EXIT_STARTUP_ABORTED

    async def _stop(self) -> None:
        self._write_state(OrchestratorPhase.STOPPING)
        if self.proxy is not None:
            await self.proxy.close()
        await self.scheduler.shutdown()
        self._write_state(OrchestratorPhase.STOPPED)


async def stop_stack(settings: OrchestratorSettings, *, timeout: Optional[float] = None) -> List[str]:
    """
    Stop whatever an earlier ``up`` left behind.

    A live orchestrator is asked to shut down with SIGTERM and awaited; when
    none is running the recorded service processes are stopped directly, in
    reverse startup order. Returns the names of services that were stopped.
    """
    store = StateStore(settings.state_path)
    state = store.read()
    grace = settings.shutdown.grace_period_seconds

    if state is not None and state.orchestrator_alive() and state.orchestrator_pid != os.getpid():
        logger.info("Asking orchestrator (pid %s) to shut down", state.orchestrator_pid)
        os.kill(state.orchestrator_pid, signal.SIGTERM)
        deadline = time.monotonic() + (timeout if timeout is not None else grace * max(1, len(state.shutdown_waves)) + 5)
        while state.orchestrator_alive():
            if time.monotonic() > deadline:
                raise TimeoutError(f"Orchestrator (pid {state.orchestrator_pid}) did not exit in time")
            await asyncio.sleep(_DOWN_POLL_SECONDS)
        return [record["name"] for record in state.services if record.get("pid")]

    records = {record.service: record for record in PidRecordStore(settings.pids_dir).all()}
    waves = state.shutdown_waves if state is not None and state.shutdown_waves else [sorted(records)]
    pid_store = PidRecordStore(settings.pids_dir)
    stopped: List[str] = []
    for wave in waves:
        targets = [records[name] for name in wave if name in records and records[name].live_process() is not None]
        await asyncio.gather(
            *(terminate_process_tree(rec.pid, service_name=rec.service, graceful_timeout=grace) for rec in targets)
        )
        stopped.extend(rec.service for rec in targets)
        for name in wave:
            if name in records:
                pid_store.remove(name)

    if state is not None:
        state.phase = OrchestratorPhase.STOPPED
        for record in state.services:
            if record.get("pid") and not process_matches(record.get("pid")):
                record["state"] = "stopped"
        store.write(state)
    return stopped
