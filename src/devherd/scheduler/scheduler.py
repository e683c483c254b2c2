"""
Dependency-ordered startup, restarts and shutdown.

One coordinator task owns every ServiceInstance's state. Spawning, readiness
polling, liveness polling and restart delays run as separate tasks that only
post events back to the coordinator's queue, so a health result and a process
exit for the same instance can never race on its state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set

from ..config import OrchestratorSettings
from ..errors import HealthTimeoutError, ProcessExitError, ProcessStartError, StartupAbortedError
from ..health import HealthChecker, ProbeResult
from ..instance import InstanceState, ServiceInstance
from ..registry import Registry, RestartPolicy
from ..supervisor import ProcessSupervisor, RestartBackoff
from .events import (
    AdvanceRequested,
    HealthPassed,
    HealthTimedOut,
    LivenessResult,
    ProcessExited,
    ProcessSpawned,
    RestartDue,
    SchedulerEvent,
    ShutdownRequested,
    SpawnFailed,
)
from .plan import LaunchPlan

logger = logging.getLogger(__name__)

StateListener = Callable[[ServiceInstance], None]

_SERVING = (InstanceState.HEALTHY, InstanceState.DEGRADED)


class DependencyScheduler:
    """Starts services wave by wave and keeps them running until shutdown.

    ``start`` returns once every service is Healthy and raises
    ``StartupAbortedError`` when a service fails for good during startup;
    services that are already Healthy keep running either way. ``shutdown``
    stops everything in reverse wave order. ``detach`` stops supervising and
    leaves serving processes running.
    """

    def __init__(
        self,
        registry: Registry,
        supervisor: ProcessSupervisor,
        health_checker: Optional[HealthChecker] = None,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or supervisor.settings
        self.supervisor = supervisor
        self.health_checker = health_checker or HealthChecker(self.settings.health)
        self.plan = LaunchPlan.from_registry(registry)
        self.backoff = RestartBackoff(self.settings.restart)

        self._instances: Dict[str, ServiceInstance] = {}
        self._listeners: List[StateListener] = []
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._coordinator: Optional[asyncio.Task] = None
        self._startup: Optional[asyncio.Future] = None

        self._wave_index = 0
        self._failed: Dict[str, str] = {}
        self._blocked: Set[str] = set()
        self._shutting_down = False

        self._launch_tasks: Dict[str, asyncio.Task] = {}
        self._health_tasks: Dict[str, asyncio.Task] = {}
        self._liveness_tasks: Dict[str, asyncio.Task] = {}
        self._restart_tasks: Dict[str, asyncio.Task] = {}
        self._reap_tasks: Set[asyncio.Task] = set()
        self._liveness_failures: Dict[str, int] = {}

        self.dispatch_order: List[str] = []
        self.healthy_order: List[str] = []
        self.stop_order: List[str] = []

    # ------------------------------------------------------------------ queries

    @property
    def instances(self) -> Dict[str, ServiceInstance]:
        return dict(self._instances)

    def instance(self, name: str) -> Optional[ServiceInstance]:
        return self._instances.get(name)

    def healthy_names(self) -> Set[str]:
        return {name for name, inst in self._instances.items() if inst.state is InstanceState.HEALTHY}

    @property
    def failed(self) -> Dict[str, str]:
        return dict(self._failed)

    @property
    def blocked(self) -> Set[str]:
        return set(self._blocked)

    @property
    def running(self) -> bool:
        return self._coordinator is not None and not self._coordinator.done()

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback run on the coordinator after every state change."""
        self._listeners.append(listener)

    def snapshot(self) -> List[Dict]:
        """Per-service records in declaration order, including never-started services."""
        records = []
        for spec in self.registry:
            inst = self._instances.get(spec.name)
            if inst is not None:
                record = inst.to_dict()
            else:
                record = {"name": spec.name, "attempt": 0, "state": InstanceState.PENDING.value, "pid": None}
                record["route_prefix"] = spec.route_prefix
            record["blocked"] = spec.name in self._blocked
            record["dependencies"] = list(spec.dependencies)
            records.append(record)
        return records

    # ------------------------------------------------------------------ control

    def post(self, event: SchedulerEvent) -> None:
        if self._queue is None:
            raise RuntimeError("Scheduler is not running")
        self._queue.put_nowait(event)

    def post_threadsafe(self, event: SchedulerEvent) -> None:
        """Post from another thread (signal handlers, probe threads)."""
        if self._loop is None:
            raise RuntimeError("Scheduler is not running")
        self._loop.call_soon_threadsafe(self.post, event)

    async def start(self) -> None:
        """Launch every service in dependency order and wait for startup to settle.

        Raises:
            StartupAbortedError: A service failed and could not be restarted; the
                error names it, its cause, and the services that were never started
        """
        if self._coordinator is not None:
            raise RuntimeError("Scheduler already started")
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._startup = self._loop.create_future()
        self.supervisor.set_exit_callback(self._on_process_exit)
        self._coordinator = asyncio.create_task(self._run(), name="devherd-scheduler")
        logger.info("Launch plan: %s", " -> ".join("[" + ", ".join(wave) + "]" for wave in self.plan))
        self.post(AdvanceRequested())
        await asyncio.shield(self._startup)

    async def shutdown(self, grace_period: Optional[float] = None) -> None:
        """Stop every instance in reverse wave order and end the coordinator."""
        if not self.running:
            return
        done = self._loop.create_future()
        self.post(ShutdownRequested(grace_period, done))
        await done
        await self._coordinator

    async def detach(self) -> None:
        """Stop supervising but leave serving processes running (startup abort path).

        Failed services that are still being stopped are stopped to the end,
        including the SIGKILL after their grace period.
        """
        self._shutting_down = True
        watchers = [t for t in self._all_tasks() if t not in self._reap_tasks and not t.done()]
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        reaps = [t for t in self._reap_tasks if not t.done()]
        while reaps:
            await asyncio.gather(*reaps, return_exceptions=True)
            reaps = [t for t in self._reap_tasks if not t.done()]
        if self._coordinator is not None and not self._coordinator.done():
            self._coordinator.cancel()
            await asyncio.gather(self._coordinator, return_exceptions=True)
        self.supervisor.set_exit_callback(None)

    async def wait_closed(self) -> None:
        if self._coordinator is not None:
            await self._coordinator

    # -------------------------------------------------------------- coordinator

    async def _run(self) -> None:
        try:
            while True:
                event = await self._queue.get()
                if isinstance(event, ShutdownRequested):
                    await self._shutdown(event)
                    return
                self._handle(event)
        except Exception as exc:
            logger.exception("Scheduler coordinator crashed")
            if self._startup is not None and not self._startup.done():
                self._startup.set_exception(exc)
            raise

    def _handle(self, event: SchedulerEvent) -> None:
        if isinstance(event, AdvanceRequested):
            self._advance()
        elif isinstance(event, ProcessSpawned):
            self._on_spawned(event.instance)
        elif isinstance(event, SpawnFailed):
            self._on_spawn_failed(event.instance, event.reason)
        elif isinstance(event, HealthPassed):
            self._on_health_passed(event.instance, event.result)
        elif isinstance(event, HealthTimedOut):
            self._on_health_timeout(event.instance, event.reason)
        elif isinstance(event, ProcessExited):
            self._on_exited(event.instance, event.returncode, event.expected)
        elif isinstance(event, LivenessResult):
            self._on_liveness(event.instance, event.result)
        elif isinstance(event, RestartDue):
            self._on_restart_due(event.instance)
        else:
            raise TypeError(f"Unknown scheduler event {type(event).__name__}")

    def _current(self, instance: ServiceInstance) -> bool:
        return self._instances.get(instance.name) is instance

    def _set_state(self, instance: ServiceInstance, target: InstanceState, reason: Optional[str] = None) -> None:
        before = instance.state
        instance.transition(target, reason=reason)
        if before is target:
            return
        log = logger.warning if target in (InstanceState.FAILED, InstanceState.DEGRADED) else logger.info
        log("%s: %s -> %s%s", instance.name, before.value, target.value, f" ({reason})" if reason else "")
        for listener in self._listeners:
            listener(instance)

    # ------------------------------------------------------------ wave dispatch

    def _startup_pending(self) -> bool:
        return self._startup is not None and not self._startup.done()

    def _settled(self, name: str) -> bool:
        if name in self._failed or name in self._blocked:
            return True
        inst = self._instances.get(name)
        return inst is not None and inst.state in _SERVING

    def _advance(self) -> None:
        if self._shutting_down or not self._startup_pending():
            return
        while self._wave_index < len(self.plan):
            wave = self.plan.waves[self._wave_index]
            for name in wave:
                if name not in self._instances and name not in self._blocked and name not in self._failed:
                    self._dispatch(ServiceInstance(spec=self.registry[name]))
            if not all(self._settled(name) for name in wave):
                return
            self._wave_index += 1

        if self._failed:
            error = StartupAbortedError(list(self._failed), self._blocked - set(self._failed), self._failed)
            logger.error("%s", error)
            self._startup.set_exception(error)
        else:
            logger.info("All %d service(s) healthy", len(self.registry))
            self._startup.set_result(None)

    def _dispatch(self, instance: ServiceInstance) -> None:
        self._instances[instance.name] = instance
        self.dispatch_order.append(instance.name)
        for listener in self._listeners:
            listener(instance)
        self._launch_tasks[instance.name] = asyncio.create_task(self._launch(instance), name=f"devherd-launch-{instance.name}")

    async def _launch(self, instance: ServiceInstance) -> None:
        try:
            await self.supervisor.start(instance.spec, instance)
        except ProcessStartError as exc:
            self.post(SpawnFailed(instance, exc.reason))
            return
        except Exception as exc:
            logger.exception("Unexpected error starting %s", instance.name)
            self.post(SpawnFailed(instance, f"{type(exc).__name__}: {exc}"))
            return
        self.post(ProcessSpawned(instance))

    def _mark_failed(self, name: str, cause: str) -> None:
        """Record a permanent failure and block everything that depends on it."""
        if self._startup_pending():
            self._failed.setdefault(name, cause)
            newly_blocked = {dep for dep in self.registry.dependents_of(name) if dep not in self._instances}
            self._blocked |= newly_blocked
            if newly_blocked:
                logger.warning("%s failed; not starting %s", name, ", ".join(sorted(newly_blocked)))
            self.post(AdvanceRequested())
        running = sorted(
            dep for dep in self.registry.dependents_of(name) if dep in self._instances and self._instances[dep].state in _SERVING
        )
        if running:
            logger.warning("%s failed while dependents are running: %s", name, ", ".join(running))

    # ------------------------------------------------------------ lifecycle events

    def _on_spawned(self, instance: ServiceInstance) -> None:
        self._launch_tasks.pop(instance.name, None)
        if not self._current(instance) or instance.state is not InstanceState.PENDING:
            return
        self._set_state(instance, InstanceState.STARTING)
        self._set_state(instance, InstanceState.HEALTH_CHECKING)
        self._health_tasks[instance.name] = asyncio.create_task(
            self._await_health(instance), name=f"devherd-health-{instance.name}"
        )

    def _on_spawn_failed(self, instance: ServiceInstance, reason: str) -> None:
        self._launch_tasks.pop(instance.name, None)
        if not self._current(instance) or instance.is_terminal:
            return
        self._set_state(instance, InstanceState.FAILED, reason)
        self._mark_failed(instance.name, reason)

    async def _await_health(self, instance: ServiceInstance) -> None:
        def record(result: ProbeResult) -> None:
            instance.last_health_check_at = result.checked_at

        try:
            result = await self.health_checker.wait_until_healthy(instance.spec, on_result=record)
        except HealthTimeoutError as exc:
            self.post(HealthTimedOut(instance, str(exc)))
            return
        self.post(HealthPassed(instance, result))

    def _on_health_passed(self, instance: ServiceInstance, result: ProbeResult) -> None:
        self._health_tasks.pop(instance.name, None)
        if not self._current(instance) or instance.state is not InstanceState.HEALTH_CHECKING:
            return
        self._set_state(instance, InstanceState.HEALTHY, result.describe())
        if instance.name not in self.healthy_order:
            self.healthy_order.append(instance.name)
        self._start_liveness(instance)
        self._advance()

    def _on_health_timeout(self, instance: ServiceInstance, reason: str) -> None:
        self._health_tasks.pop(instance.name, None)
        if not self._current(instance) or instance.state is not InstanceState.HEALTH_CHECKING:
            return
        self._fail(instance, reason, failure=True)

    def _on_process_exit(self, instance: ServiceInstance, returncode: int, expected: bool) -> None:
        if self._queue is not None:
            self.post(ProcessExited(instance, returncode, expected))

    def _on_exited(self, instance: ServiceInstance, returncode: Optional[int], expected: bool) -> None:
        if not self._current(instance) or instance.is_terminal or instance.state is InstanceState.STOPPING:
            return
        if expected or self._shutting_down:
            return
        error = ProcessExitError(instance.name, returncode)
        self._fail(instance, str(error), failure=returncode != 0, process_gone=True)

    def _start_liveness(self, instance: ServiceInstance) -> None:
        health = self.settings.health
        if not health.liveness_enabled or instance.spec.health_probe is None:
            return
        self._liveness_failures[instance.name] = 0
        self._liveness_tasks[instance.name] = asyncio.create_task(
            self.health_checker.watch(instance.spec, lambda result: self.post(LivenessResult(instance, result))),
            name=f"devherd-liveness-{instance.name}",
        )

    def _on_liveness(self, instance: ServiceInstance, result: ProbeResult) -> None:
        if not self._current(instance) or instance.state not in _SERVING:
            return
        instance.last_health_check_at = result.checked_at
        if result.healthy:
            self._liveness_failures[instance.name] = 0
            if instance.state is InstanceState.DEGRADED:
                self._set_state(instance, InstanceState.HEALTHY, "liveness probe recovered")
            return

        failures = self._liveness_failures.get(instance.name, 0) + 1
        self._liveness_failures[instance.name] = failures
        threshold = self.settings.health.liveness_failure_threshold
        if failures >= threshold:
            self._fail(instance, f"liveness probe failed {failures} time(s): {result.describe()}", failure=True)
        elif instance.state is InstanceState.HEALTHY:
            self._set_state(instance, InstanceState.DEGRADED, result.describe())

    # ------------------------------------------------------------- restarts

    def _cancel_watchers(self, name: str) -> None:
        for tasks in (self._health_tasks, self._liveness_tasks):
            task = tasks.pop(name, None)
            if task is not None:
                task.cancel()

    def _should_restart(self, instance: ServiceInstance, failure: bool) -> bool:
        policy = instance.spec.restart_policy
        if policy is RestartPolicy.NEVER or (policy is RestartPolicy.ON_FAILURE and not failure):
            return False
        cap = instance.spec.max_restarts
        if cap is not None and self.backoff.restarts(instance.name) >= cap:
            logger.warning("%s reached max_restarts (%d)", instance.name, cap)
            return False
        return True

    def _fail(self, instance: ServiceInstance, reason: str, *, failure: bool, process_gone: bool = False) -> None:
        """Apply the restart policy to an instance that exited or went unhealthy."""
        self._cancel_watchers(instance.name)
        if instance.healthy_since is not None:
            self.backoff.record_healthy_run(instance.name, time.monotonic() - instance.healthy_since)
        was_serving = instance.state in _SERVING
        target = InstanceState.FAILED if failure or not was_serving else InstanceState.STOPPED
        self._set_state(instance, target, reason)

        if self._should_restart(instance, failure):
            delay = self.backoff.next_delay(instance.name)
            successor = ServiceInstance(spec=instance.spec, attempt=instance.attempt + 1)
            successor.restart_at = time.time() + delay
            self._instances[instance.name] = successor
            logger.info("Restarting %s in %.1fs (attempt %d)", instance.name, delay, successor.attempt)
            for listener in self._listeners:
                listener(successor)
            reap = None if process_gone else self._start_reap(instance)
            self._restart_tasks[instance.name] = asyncio.create_task(
                self._restart_later(successor, delay, reap), name=f"devherd-restart-{instance.name}"
            )
            return

        if not process_gone:
            self._start_reap(instance)
        if not was_serving or target is InstanceState.FAILED:
            self._mark_failed(instance.name, reason)

    def _start_reap(self, instance: ServiceInstance) -> asyncio.Task:
        """Stop a failed instance's process in a task of its own; it is never cancelled."""
        task = asyncio.create_task(self._reap(instance), name=f"devherd-reap-{instance.name}")
        self._reap_tasks.add(task)
        task.add_done_callback(self._reap_tasks.discard)
        return task

    async def _reap(self, instance: ServiceInstance) -> None:
        try:
            await self.supervisor.stop(instance)
        except RuntimeError as exc:
            logger.error("Could not stop %s: %s", instance.name, exc)

    async def _restart_later(self, successor: ServiceInstance, delay: float, reap: Optional[asyncio.Task]) -> None:
        if reap is not None:
            await asyncio.shield(reap)
        await asyncio.sleep(delay)
        self.post(RestartDue(successor))

    def _on_restart_due(self, instance: ServiceInstance) -> None:
        self._restart_tasks.pop(instance.name, None)
        if self._shutting_down or not self._current(instance) or instance.state is not InstanceState.PENDING:
            return
        self.dispatch_order.append(instance.name)
        self._launch_tasks[instance.name] = asyncio.create_task(self._launch(instance), name=f"devherd-launch-{instance.name}")

    # ------------------------------------------------------------- shutdown

    def _all_tasks(self) -> List[asyncio.Task]:
        return [
            *self._launch_tasks.values(),
            *self._health_tasks.values(),
            *self._liveness_tasks.values(),
            *self._restart_tasks.values(),
            *self._reap_tasks,
        ]

    async def _shutdown(self, request: ShutdownRequested) -> None:
        self._shutting_down = True
        logger.info("Shutting down %d service(s)", len(self._instances))
        if self._startup_pending():
            self._startup.cancel()

        probes = [*self._health_tasks.values(), *self._liveness_tasks.values(), *self._restart_tasks.values()]
        for task in probes:
            task.cancel()
        await asyncio.gather(*probes, return_exceptions=True)
        # Spawns in flight must finish so their processes can be stopped below.
        await asyncio.gather(*self._launch_tasks.values(), *self._reap_tasks, return_exceptions=True)
        self._health_tasks.clear()
        self._liveness_tasks.clear()
        self._restart_tasks.clear()
        self._launch_tasks.clear()

        try:
            for wave in self.plan.shutdown_waves():
                members = [self._instances[name] for name in wave if name in self._instances]
                await asyncio.gather(*(self._stop_instance(inst, request.grace_period) for inst in members))
            # Instances replaced by a pending restart may still have a live process.
            await self.supervisor.stop_all(request.grace_period)
        except Exception as exc:
            request.done.set_exception(exc)
            raise
        self.supervisor.set_exit_callback(None)
        logger.info("Shutdown complete")
        request.done.set_result(None)

    async def _stop_instance(self, instance: ServiceInstance, grace_period: Optional[float]) -> None:
        if instance.is_terminal:
            return
        if instance.state is InstanceState.PENDING:
            if not self.supervisor.is_alive(instance):
                self._set_state(instance, InstanceState.STOPPED, "shutdown before start")
                return
            self._set_state(instance, InstanceState.STARTING)
        self._set_state(instance, InstanceState.STOPPING)
        returncode = await self.supervisor.stop(instance, grace_period)
        self.stop_order.append(instance.name)
        self._set_state(instance, InstanceState.STOPPED, f"stopped (code {returncode})")
