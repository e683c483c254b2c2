"""devherd: run a multi-service development stack in dependency order behind one reverse proxy."""

from .config_loader import StackDefinition, load_stack
from .errors import (
    CyclicDependencyError,
    DevherdError,
    HealthTimeoutError,
    OrchestratorAlreadyRunning,
    ProcessExitError,
    ProcessStartError,
    ProxyUpstreamUnavailable,
    StartupAbortedError,
    ValidationError,
)
from .health import HealthChecker
from .instance import InstanceState, ServiceInstance
from .proxy import ReverseProxy, RouteTable, RouteTableHolder
from .registry import Registry, RestartPolicy, ServiceSpec
from .scheduler import DependencyScheduler, LaunchPlan
from .supervisor import ProcessSupervisor

__version__ = "0.1.0"

__all__ = [
    "CyclicDependencyError",
    "DependencyScheduler",
    "DevherdError",
    "HealthChecker",
    "HealthTimeoutError",
    "InstanceState",
    "LaunchPlan",
    "OrchestratorAlreadyRunning",
    "ProcessExitError",
    "ProcessStartError",
    "ProcessSupervisor",
    "ProxyUpstreamUnavailable",
    "Registry",
    "RestartPolicy",
    "ReverseProxy",
    "RouteTable",
    "RouteTableHolder",
    "ServiceInstance",
    "ServiceSpec",
    "StackDefinition",
    "StartupAbortedError",
    "ValidationError",
    "load_stack",
]
