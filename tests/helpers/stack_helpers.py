"""Shared builders and fakes for orchestrator tests."""

from __future__ import annotations

import asyncio
import json
import socket
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from devherd.errors import HealthTimeoutError, ProcessStartError
from devherd.health import ProbeOutcome, ProbeResult
from devherd.instance import InstanceState, ServiceInstance
from devherd.registry import ServiceSpec

PY = sys.executable

SLEEP_FOREVER_SRC = "import time\nwhile True:\n    time.sleep(0.1)\n"

TCP_SERVER_SRC = (
    "import socket, sys\n"
    "s = socket.socket()\n"
    "s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)\n"
    "s.bind(('127.0.0.1', int(sys.argv[1])))\n"
    "s.listen(16)\n"
    "while True:\n"
    "    c, _ = s.accept()\n"
    "    c.close()\n"
)

IGNORE_SIGTERM_SRC = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "while True:\n"
    "    time.sleep(0.1)\n"
)


def sleeper_command() -> Tuple[str, ...]:
    return (PY, "-c", SLEEP_FOREVER_SRC)


def tcp_server_command(port: int) -> Tuple[str, ...]:
    return (PY, "-c", TCP_SERVER_SRC, str(port))


def exit_command(code: int, delay: float = 0.0) -> Tuple[str, ...]:
    return (PY, "-c", f"import sys, time\ntime.sleep({delay})\nsys.exit({code})\n")


def echo_command(text: str) -> Tuple[str, ...]:
    return (PY, "-c", f"print({text!r}, flush=True)\nimport time\nwhile True:\n    time.sleep(0.1)\n")


def ignore_sigterm_command() -> Tuple[str, ...]:
    return (PY, "-c", IGNORE_SIGTERM_SRC)


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_spec(name: str, deps: Tuple[str, ...] = (), **kwargs) -> ServiceSpec:
    kwargs.setdefault("command", sleeper_command())
    return ServiceSpec(name=name, dependencies=tuple(deps), **kwargs)


def write_definition(directory: Path, payload: dict, name: str = "devherd.json") -> Path:
    path = directory / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll *predicate* until it is truthy or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeSupervisor:
    """Records spawn/stop calls without touching the OS."""

    def __init__(self, settings, *, spawn_errors: Optional[Dict[str, str]] = None) -> None:
        self.settings = settings
        self.spawn_errors = dict(spawn_errors or {})
        self.started: List[str] = []
        self.stopped: List[str] = []
        self._alive: Dict[str, ServiceInstance] = {}
        self._on_exit = None
        self._next_pid = 1000

    def set_exit_callback(self, callback) -> None:
        self._on_exit = callback

    async def start(self, spec: ServiceSpec, instance: Optional[ServiceInstance] = None) -> ServiceInstance:
        await asyncio.sleep(0)
        if spec.name in self.spawn_errors:
            raise ProcessStartError(spec.name, self.spawn_errors[spec.name])
        if instance is None:
            instance = ServiceInstance(spec=spec, state=InstanceState.STARTING)
        self._next_pid += 1
        instance.pid = self._next_pid
        self.started.append(spec.name)
        self._alive[spec.name] = instance
        return instance

    async def stop(self, instance: ServiceInstance, grace_period: Optional[float] = None) -> Optional[int]:
        await asyncio.sleep(0)
        if self._alive.get(instance.name) is not instance:
            return instance.returncode
        del self._alive[instance.name]
        instance.returncode = -15
        self.stopped.append(instance.name)
        if self._on_exit is not None:
            self._on_exit(instance, -15, True)
        return -15

    async def stop_all(self, grace_period: Optional[float] = None) -> None:
        for instance in list(self._alive.values()):
            await self.stop(instance, grace_period)

    def is_alive(self, instance: ServiceInstance) -> bool:
        return self._alive.get(instance.name) is instance

    def alive_names(self) -> List[str]:
        return list(self._alive)

    def crash(self, name: str, returncode: int) -> ServiceInstance:
        """Simulate an unexpected exit of the live process for *name*."""
        instance = self._alive.pop(name)
        instance.returncode = returncode
        self._on_exit(instance, returncode, False)
        return instance


class FakeHealthChecker:
    """Readiness succeeds unless the service is listed in ``failing``."""

    def __init__(self, *, failing: Optional[Dict[str, str]] = None, delays: Optional[Dict[str, float]] = None) -> None:
        self.failing = dict(failing or {})
        self.delays = dict(delays or {})
        self.checked: List[str] = []
        self.liveness: Dict[str, asyncio.Queue] = {}

    async def wait_until_healthy(self, spec: ServiceSpec, *, timeout=None, on_result=None) -> ProbeResult:
        self.checked.append(spec.name)
        await asyncio.sleep(self.delays.get(spec.name, 0))
        if spec.name in self.failing:
            raise HealthTimeoutError(spec.name, timeout or 0.1, last_failure=self.failing[spec.name])
        result = ProbeResult(spec.name, ProbeOutcome.SUCCESS, "ok", 0.1)
        if on_result is not None:
            on_result(result)
        return result

    async def watch(self, spec: ServiceSpec, on_result, *, interval=None) -> None:
        queue = self.liveness.setdefault(spec.name, asyncio.Queue())
        while True:
            healthy = await queue.get()
            outcome = ProbeOutcome.SUCCESS if healthy else ProbeOutcome.REFUSED
            on_result(ProbeResult(spec.name, outcome, "liveness", 0.1))

    def feed_liveness(self, name: str, healthy: bool) -> None:
        self.liveness.setdefault(name, asyncio.Queue()).put_nowait(healthy)
