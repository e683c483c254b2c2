"""Service spec registry."""

from .models import (
    ExecProbe,
    HealthProbe,
    HttpProbe,
    ProbeKind,
    RedisProbe,
    RestartPolicy,
    ServiceSpec,
    TcpProbe,
    Upstream,
)
from .registry import Registry, load

__all__ = [
    "ExecProbe",
    "HealthProbe",
    "HttpProbe",
    "ProbeKind",
    "RedisProbe",
    "Registry",
    "RestartPolicy",
    "ServiceSpec",
    "TcpProbe",
    "Upstream",
    "load",
]
