"""Per-attempt runtime record of a service and its lifecycle state machine."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import DevherdError
from .registry.models import ServiceSpec

logger = logging.getLogger(__name__)


class InstanceState(Enum):
    """Lifecycle states of a ServiceInstance."""

    PENDING = "pending"  # created, waiting for dispatch or a restart delay
    STARTING = "starting"  # process spawned
    HEALTH_CHECKING = "health_checking"  # readiness probe polling
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # failed a liveness re-probe, routes withdrawn
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (InstanceState.STOPPED, InstanceState.FAILED)

    @property
    def running(self) -> bool:
        return self in (
            InstanceState.STARTING,
            InstanceState.HEALTH_CHECKING,
            InstanceState.HEALTHY,
            InstanceState.DEGRADED,
            InstanceState.STOPPING,
        )


_S = InstanceState
_TRANSITIONS: Dict[InstanceState, frozenset] = {
    _S.PENDING: frozenset({_S.STARTING, _S.STOPPED, _S.FAILED}),
    _S.STARTING: frozenset({_S.HEALTH_CHECKING, _S.STOPPING, _S.STOPPED, _S.FAILED}),
    _S.HEALTH_CHECKING: frozenset({_S.HEALTHY, _S.STOPPING, _S.STOPPED, _S.FAILED}),
    _S.HEALTHY: frozenset({_S.DEGRADED, _S.HEALTH_CHECKING, _S.STOPPING, _S.STOPPED, _S.FAILED}),
    _S.DEGRADED: frozenset({_S.HEALTHY, _S.HEALTH_CHECKING, _S.STOPPING, _S.STOPPED, _S.FAILED}),
    _S.STOPPING: frozenset({_S.STOPPED, _S.FAILED}),
    _S.STOPPED: frozenset(),
    _S.FAILED: frozenset(),
}


class InvalidTransitionError(DevherdError, RuntimeError):
    """Raised when a state change is not allowed by the lifecycle."""

    def __init__(self, service_name: str, current: InstanceState, target: InstanceState) -> None:
        self.service_name = service_name
        self.current = current
        self.target = target
        super().__init__(f"{service_name}: illegal transition {current.value} -> {target.value}")


@dataclass(eq=False)
class ServiceInstance:
    """One running attempt of a ServiceSpec.

    The scheduler's event loop is the only writer of ``state``; other
    components read it or receive the instance in events.
    """

    spec: ServiceSpec
    attempt: int = 1
    state: InstanceState = InstanceState.PENDING
    pid: Optional[int] = None
    started_at: Optional[float] = None
    last_health_check_at: Optional[float] = None
    healthy_since: Optional[float] = None
    returncode: Optional[int] = None
    last_error: Optional[str] = None
    restart_at: Optional[float] = None
    history: List[Tuple[str, float]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state.value, time.time()))

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def is_terminal(self) -> bool:
        return self.state.terminal

    def can_transition(self, target: InstanceState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: InstanceState, *, reason: Optional[str] = None) -> None:
        """Move to *target*; same-state transitions are ignored."""
        if target is self.state:
            return
        if not self.can_transition(target):
            raise InvalidTransitionError(self.name, self.state, target)
        now = time.time()
        logger.debug("%s#%d %s -> %s%s", self.name, self.attempt, self.state.value, target.value, f" ({reason})" if reason else "")
        self.state = target
        self.history.append((target.value, now))
        if target is InstanceState.HEALTHY:
            if self.healthy_since is None:
                self.healthy_since = time.monotonic()
        else:
            self.healthy_since = None
        if reason and target in (InstanceState.FAILED, InstanceState.DEGRADED, InstanceState.STOPPED):
            self.last_error = reason

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "attempt": self.attempt,
            "state": self.state.value,
            "pid": self.pid,
            "started_at": self.started_at,
            "last_health_check_at": self.last_health_check_at,
            "returncode": self.returncode,
            "last_error": self.last_error,
            "restart_at": self.restart_at,
            "route_prefix": self.spec.route_prefix,
        }


__all__ = ["InstanceState", "InvalidTransitionError", "ServiceInstance"]
