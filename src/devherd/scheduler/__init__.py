"""Dependency-ordered launch and shutdown of service instances."""

from ..instance import InstanceState, InvalidTransitionError, ServiceInstance
from .plan import LaunchPlan
from .scheduler import DependencyScheduler, StateListener

__all__ = [
    "DependencyScheduler",
    "InstanceState",
    "InvalidTransitionError",
    "LaunchPlan",
    "ServiceInstance",
    "StateListener",
]
