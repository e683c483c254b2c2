"""Tests for HealthChecker polling behaviour."""

import asyncio

import pytest

from devherd.config import HealthSettings
from devherd.errors import HealthTimeoutError
from devherd.health import HealthChecker, HealthVerdict, ProbeOutcome, ProbeResult
from devherd.instance import InstanceState, ServiceInstance
from devherd.registry import TcpProbe
from tests.helpers.stack_helpers import free_port, make_spec


def _scripted_checker(outcomes, **settings):
    checker = HealthChecker(HealthSettings(interval_seconds=0.01, **settings))
    remaining = list(outcomes)

    async def check_once(spec, *, budget=None):
        outcome = remaining.pop(0) if remaining else ProbeOutcome.REFUSED
        return ProbeResult(spec.name, outcome, "scripted", 0.1)

    checker.check_once = check_once
    return checker


@pytest.mark.asyncio
async def test_wait_until_healthy_reports_every_attempt():
    checker = _scripted_checker([ProbeOutcome.REFUSED, ProbeOutcome.REFUSED, ProbeOutcome.SUCCESS])
    seen = []

    result = await checker.wait_until_healthy(make_spec("api"), timeout=5.0, on_result=seen.append)

    assert result.healthy
    assert [r.outcome for r in seen] == [ProbeOutcome.REFUSED, ProbeOutcome.REFUSED, ProbeOutcome.SUCCESS]


@pytest.mark.asyncio
async def test_wait_until_healthy_times_out_with_last_failure():
    spec = make_spec("db", health_probe=TcpProbe("127.0.0.1", free_port(), timeout_seconds=0.2))
    checker = HealthChecker(HealthSettings(interval_seconds=0.05))

    with pytest.raises(HealthTimeoutError) as excinfo:
        await checker.wait_until_healthy(spec, timeout=0.3)

    assert excinfo.value.service_name == "db"
    assert "refused" in excinfo.value.last_failure


@pytest.mark.asyncio
async def test_spec_ready_timeout_overrides_default():
    checker = HealthChecker(HealthSettings(timeout_seconds=60))

    assert checker.timeout_for(make_spec("a", health_timeout_seconds=2.0)) == 2.0
    assert checker.timeout_for(make_spec("b")) == 60


@pytest.mark.asyncio
async def test_service_without_probe_is_healthy_immediately():
    result = await HealthChecker().check_once(make_spec("worker"))

    assert result.healthy
    assert result.detail == "no healthcheck configured"


@pytest.mark.asyncio
async def test_probe_verdicts_follow_instance_state():
    checker = _scripted_checker([ProbeOutcome.REFUSED, ProbeOutcome.REFUSED, ProbeOutcome.SUCCESS])
    starting = ServiceInstance(spec=make_spec("api"), state=InstanceState.HEALTH_CHECKING)
    serving = ServiceInstance(spec=make_spec("api"), state=InstanceState.HEALTHY)

    assert await checker.probe(starting) is HealthVerdict.PENDING
    assert await checker.probe(serving) is HealthVerdict.DEGRADED
    assert await checker.probe(serving) is HealthVerdict.HEALTHY


@pytest.mark.asyncio
async def test_watch_disabled_without_interval():
    checker = HealthChecker(HealthSettings(liveness_interval_seconds=0))

    await asyncio.wait_for(checker.watch(make_spec("api"), lambda result: None), timeout=1.0)


@pytest.mark.asyncio
async def test_watch_polls_until_cancelled():
    checker = _scripted_checker([ProbeOutcome.SUCCESS, ProbeOutcome.REFUSED])
    seen = []

    task = asyncio.create_task(checker.watch(make_spec("api"), seen.append, interval=0.01))
    while len(seen) < 2:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert seen[0].healthy and not seen[1].healthy
