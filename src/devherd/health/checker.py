"""Readiness and liveness polling for service instances."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

from ..config import HealthSettings
from ..errors import HealthTimeoutError
from ..instance import InstanceState, ServiceInstance
from ..registry.models import ExecProbe, HttpProbe, RedisProbe, ServiceSpec, TcpProbe
from .probe_helpers import run_exec_probe, run_http_probe, run_redis_probe, run_tcp_probe
from .types import HealthVerdict, ProbeOutcome, ProbeResult

logger = logging.getLogger(__name__)

ResultCallback = Callable[[ProbeResult], None]

_MIN_PROBE_TIMEOUT_SECONDS = 0.05


class HealthChecker:
    """Runs probes against services; never mutates instance state.

    ``probe`` is a single non-blocking poll. ``wait_until_healthy`` repeats it on
    the configured interval until success or the overall timeout, and
    ``watch`` keeps polling a running service for liveness. Both loops are
    plain coroutines, so cancelling the task that runs them cancels the probe
    in flight.
    """

    def __init__(
        self,
        settings: Optional[HealthSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or HealthSettings()
        self._clock = clock
        self._sleep = sleep

    def timeout_for(self, spec: ServiceSpec) -> float:
        return spec.health_timeout_seconds or self.settings.timeout_seconds

    async def check_once(self, spec: ServiceSpec, *, budget: Optional[float] = None) -> ProbeResult:
        """Run one probe attempt, bounded by the probe timeout and *budget*."""
        probe = spec.health_probe
        if probe is None:
            return ProbeResult(spec.name, ProbeOutcome.SUCCESS, "no healthcheck configured", 0.0)

        timeout = probe.timeout_seconds or self.settings.probe_timeout_seconds
        if budget is not None:
            timeout = max(_MIN_PROBE_TIMEOUT_SECONDS, min(timeout, budget))

        started = time.perf_counter()
        outcome, detail = await self._dispatch(spec, timeout)
        elapsed_ms = (time.perf_counter() - started) * 1000
        result = ProbeResult(spec.name, outcome, detail, elapsed_ms)
        if result.healthy:
            logger.debug("%s probe ok (%s) in %.1fms", spec.name, probe.describe(), elapsed_ms)
        else:
            logger.debug("%s probe failed (%s): %s", spec.name, probe.describe(), result.describe())
        return result

    async def _dispatch(self, spec: ServiceSpec, timeout: float) -> Tuple[ProbeOutcome, str]:
        probe = spec.health_probe
        if isinstance(probe, TcpProbe):
            return await run_tcp_probe(probe, timeout)
        if isinstance(probe, HttpProbe):
            return await run_http_probe(probe, timeout)
        if isinstance(probe, ExecProbe):
            return await run_exec_probe(probe, timeout, environment=spec.environment, cwd=spec.working_dir)
        if isinstance(probe, RedisProbe):
            return await run_redis_probe(probe, timeout)
        raise TypeError(f"Unsupported probe type {type(probe).__name__}")

    async def probe(self, instance: ServiceInstance) -> HealthVerdict:
        """Single poll mapped onto the instance's lifecycle.

        A passing probe is ``HEALTHY``. A failing probe is ``DEGRADED`` for an
        instance that was already serving, otherwise it stays ``PENDING``.
        """
        result = await self.check_once(instance.spec)
        if result.healthy:
            return HealthVerdict.HEALTHY
        if instance.state in (InstanceState.HEALTHY, InstanceState.DEGRADED):
            return HealthVerdict.DEGRADED
        return HealthVerdict.PENDING

    async def wait_until_healthy(
        self,
        spec: ServiceSpec,
        *,
        timeout: Optional[float] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> ProbeResult:
        """Poll until a probe passes.

        Raises:
            HealthTimeoutError: No probe passed within the overall timeout.
        """
        overall = timeout if timeout is not None else self.timeout_for(spec)
        interval = self.settings.interval_seconds
        deadline = self._clock() + overall
        attempts = 0

        while True:
            remaining = deadline - self._clock()
            result = await self.check_once(spec, budget=remaining if remaining > 0 else None)
            attempts += 1
            if on_result is not None:
                on_result(result)
            if result.healthy:
                logger.info("%s healthy after %d probe(s)", spec.name, attempts)
                return result

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning("%s health timeout after %d probe(s): %s", spec.name, attempts, result.describe())
                raise HealthTimeoutError(spec.name, overall, last_failure=result.describe())
            await self._sleep(min(interval, remaining))

    async def watch(
        self,
        spec: ServiceSpec,
        on_result: ResultCallback,
        *,
        interval: Optional[float] = None,
    ) -> None:
        """Re-probe forever on the liveness interval; stops when cancelled."""
        period = interval if interval is not None else self.settings.liveness_interval_seconds
        if period <= 0:
            return
        while True:
            await self._sleep(period)
            on_result(await self.check_once(spec))
