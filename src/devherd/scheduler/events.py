"""Messages consumed by the scheduler's coordinating task."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from ..health import ProbeResult
from ..instance import ServiceInstance


@dataclass(frozen=True)
class SchedulerEvent:
    """Base class; every event is handled on the coordinator task only."""


@dataclass(frozen=True)
class AdvanceRequested(SchedulerEvent):
    """Re-evaluate which launch wave may be dispatched."""


@dataclass(frozen=True)
class ProcessSpawned(SchedulerEvent):
    instance: ServiceInstance


@dataclass(frozen=True)
class SpawnFailed(SchedulerEvent):
    instance: ServiceInstance
    reason: str


@dataclass(frozen=True)
class HealthPassed(SchedulerEvent):
    instance: ServiceInstance
    result: ProbeResult


@dataclass(frozen=True)
class HealthTimedOut(SchedulerEvent):
    instance: ServiceInstance
    reason: str


@dataclass(frozen=True)
class ProcessExited(SchedulerEvent):
    instance: ServiceInstance
    returncode: Optional[int]
    expected: bool


@dataclass(frozen=True)
class LivenessResult(SchedulerEvent):
    instance: ServiceInstance
    result: ProbeResult


@dataclass(frozen=True)
class RestartDue(SchedulerEvent):
    instance: ServiceInstance


@dataclass(frozen=True)
class ShutdownRequested(SchedulerEvent):
    grace_period: Optional[float]
    done: asyncio.Future


__all__ = [
    "AdvanceRequested",
    "HealthPassed",
    "HealthTimedOut",
    "LivenessResult",
    "ProcessExited",
    "ProcessSpawned",
    "RestartDue",
    "SchedulerEvent",
    "ShutdownRequested",
    "SpawnFailed",
]
