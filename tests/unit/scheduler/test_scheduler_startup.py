"""Tests for dependency-ordered startup and startup aborts."""

import asyncio

import psutil
import pytest

from devherd.errors import StartupAbortedError
from devherd.instance import InstanceState
from devherd.registry import Registry
from devherd.scheduler import DependencyScheduler
from devherd.supervisor import ProcessSupervisor
from tests.helpers.stack_helpers import FakeHealthChecker, FakeSupervisor, ignore_sigterm_command, make_spec


def _stack():
    return Registry(
        [
            make_spec("db"),
            make_spec("cache"),
            make_spec("api", ("db", "cache")),
            make_spec("worker", ("api",)),
        ]
    )


@pytest.mark.asyncio
async def test_services_start_in_waves(runtime_settings):
    supervisor = FakeSupervisor(runtime_settings)
    checker = FakeHealthChecker(delays={"cache": 0.1})
    scheduler = DependencyScheduler(_stack(), supervisor, checker, runtime_settings)
    states_when_api_dispatched = {}

    def on_change(instance):
        if instance.name == "api" and instance.state is InstanceState.PENDING and not states_when_api_dispatched:
            states_when_api_dispatched.update({name: inst.state for name, inst in scheduler.instances.items()})

    scheduler.add_listener(on_change)
    try:
        await asyncio.wait_for(scheduler.start(), timeout=5)

        assert scheduler.dispatch_order == ["db", "cache", "api", "worker"]
        assert scheduler.healthy_order == ["db", "cache", "api", "worker"]
        assert states_when_api_dispatched["db"] is InstanceState.HEALTHY
        assert states_when_api_dispatched["cache"] is InstanceState.HEALTHY
        assert "worker" not in states_when_api_dispatched
        assert scheduler.healthy_names() == {"db", "cache", "api", "worker"}
    finally:
        await scheduler.shutdown()


@pytest.mark.asyncio
async def test_failed_dependency_aborts_and_blocks_dependents(runtime_settings):
    supervisor = FakeSupervisor(runtime_settings)
    checker = FakeHealthChecker(failing={"db": "refused: connection refused"})
    scheduler = DependencyScheduler(_stack(), supervisor, checker, runtime_settings)

    with pytest.raises(StartupAbortedError) as excinfo:
        await asyncio.wait_for(scheduler.start(), timeout=5)

    error = excinfo.value
    assert error.failed == ("db",)
    assert error.blocked == ("api", "worker")
    assert "did not become healthy" in error.causes["db"]
    assert scheduler.instance("db").state is InstanceState.FAILED
    assert scheduler.instance("cache").state is InstanceState.HEALTHY
    assert "api" not in supervisor.started and "worker" not in supervisor.started

    records = {record["name"]: record for record in scheduler.snapshot()}
    assert records["api"]["blocked"] is True
    assert records["api"]["attempt"] == 0
    assert records["cache"]["blocked"] is False

    await scheduler.detach()
    assert "cache" in supervisor.alive_names()


@pytest.mark.asyncio
async def test_spawn_failure_is_not_restarted(runtime_settings):
    supervisor = FakeSupervisor(runtime_settings, spawn_errors={"db": "cannot execute 'postgres'"})
    registry = Registry([make_spec("db", restart_policy=_always()), make_spec("api", ("db",))])
    scheduler = DependencyScheduler(registry, supervisor, FakeHealthChecker(), runtime_settings)

    with pytest.raises(StartupAbortedError) as excinfo:
        await asyncio.wait_for(scheduler.start(), timeout=5)

    assert excinfo.value.causes == {"db": "cannot execute 'postgres'"}
    assert excinfo.value.blocked == ("api",)
    assert scheduler.dispatch_order == ["db"]
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_independent_services_unaffected_by_failure(runtime_settings):
    registry = Registry([make_spec("db"), make_spec("docs"), make_spec("api", ("db",)), make_spec("site", ("docs",))])
    supervisor = FakeSupervisor(runtime_settings)
    scheduler = DependencyScheduler(registry, supervisor, FakeHealthChecker(failing={"db": "timeout"}), runtime_settings)

    with pytest.raises(StartupAbortedError) as excinfo:
        await asyncio.wait_for(scheduler.start(), timeout=5)

    assert excinfo.value.blocked == ("api",)
    assert scheduler.instance("site").state is InstanceState.HEALTHY
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_start_twice_rejected(runtime_settings, fake_supervisor, fake_checker):
    scheduler = DependencyScheduler(Registry([make_spec("solo")]), fake_supervisor, fake_checker, runtime_settings)
    await scheduler.start()
    try:
        with pytest.raises(RuntimeError, match="already started"):
            await scheduler.start()
    finally:
        await scheduler.shutdown()


def _always():
    from devherd.registry import RestartPolicy

    return RestartPolicy.ALWAYS


class _BrokenStartSupervisor(FakeSupervisor):
    async def start(self, spec, instance=None):
        if spec.name == "db":
            raise OSError(28, "No space left on device")
        return await super().start(spec, instance)


@pytest.mark.asyncio
async def test_unexpected_start_error_aborts_instead_of_hanging(runtime_settings):
    registry = Registry([make_spec("db"), make_spec("api", ("db",))])
    scheduler = DependencyScheduler(registry, _BrokenStartSupervisor(runtime_settings), FakeHealthChecker(), runtime_settings)

    with pytest.raises(StartupAbortedError) as excinfo:
        await asyncio.wait_for(scheduler.start(), timeout=5)

    assert "No space left on device" in excinfo.value.causes["db"]
    assert excinfo.value.blocked == ("api",)
    assert scheduler.instance("db").state is InstanceState.FAILED
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_unusable_logs_dir_aborts_startup(runtime_settings):
    runtime_settings.runtime_dir.mkdir(parents=True, exist_ok=True)
    runtime_settings.logs_dir.write_text("not a directory")
    supervisor = ProcessSupervisor(runtime_settings)
    registry = Registry([make_spec("db"), make_spec("api", ("db",))])
    scheduler = DependencyScheduler(registry, supervisor, FakeHealthChecker(), runtime_settings)

    with pytest.raises(StartupAbortedError) as excinfo:
        await asyncio.wait_for(scheduler.start(), timeout=5)

    assert "cannot open log" in excinfo.value.causes["db"]
    assert supervisor.running_names() == []
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_detach_finishes_killing_failed_service(runtime_settings):
    supervisor = ProcessSupervisor(runtime_settings)
    registry = Registry(
        [
            make_spec("db", command=ignore_sigterm_command(), grace_period_seconds=0.3),
            make_spec("cache"),
            make_spec("api", ("db",)),
        ]
    )
    checker = FakeHealthChecker(failing={"db": "exec exited 1"}, delays={"db": 0.5})
    scheduler = DependencyScheduler(registry, supervisor, checker, runtime_settings)
    try:
        with pytest.raises(StartupAbortedError):
            await asyncio.wait_for(scheduler.start(), timeout=5)
        db_pid = scheduler.instance("db").pid

        await asyncio.wait_for(scheduler.detach(), timeout=5)

        assert scheduler.instance("db").state is InstanceState.FAILED
        assert _gone(db_pid)
        assert supervisor.is_alive(scheduler.instance("cache"))
    finally:
        await supervisor.stop_all(grace_period=1.0)


def _gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True
