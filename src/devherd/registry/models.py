"""Immutable service descriptions produced once at load time."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import ClassVar, Mapping, Optional, Tuple, Union

from ..errors import ValidationError

DEFAULT_UPSTREAM_HOST = "127.0.0.1"
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0


class RestartPolicy(Enum):
    """Rule governing relaunch after an unexpected exit."""

    NEVER = "never"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"

    @classmethod
    def parse(cls, raw: object, *, field_name: str = "restart") -> "RestartPolicy":
        if raw is None:
            return cls.NEVER
        # compose spells "never" as "no"
        if raw is False or raw == "no":
            return cls.NEVER
        if isinstance(raw, str):
            normalized = raw.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        raise ValidationError.invalid_value(field_name, raw, f"Expected one of: {', '.join(m.value for m in cls)}")


class ProbeKind(Enum):
    TCP = "tcp"
    HTTP = "http"
    EXEC = "exec"
    REDIS = "redis"


@dataclass(frozen=True)
class TcpProbe:
    """Healthy once a TCP connection is accepted."""

    host: str
    port: int
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    kind: ClassVar[ProbeKind] = ProbeKind.TCP

    def describe(self) -> str:
        return f"tcp {self.host}:{self.port}"


@dataclass(frozen=True)
class HttpProbe:
    """Healthy once a GET answers with a 2xx status."""

    url: str
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    kind: ClassVar[ProbeKind] = ProbeKind.HTTP

    def describe(self) -> str:
        return f"http GET {self.url}"


@dataclass(frozen=True)
class ExecProbe:
    """Healthy once the command exits 0 within its own timeout."""

    command: Tuple[str, ...]
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    kind: ClassVar[ProbeKind] = ProbeKind.EXEC

    def describe(self) -> str:
        return "exec " + " ".join(self.command)


@dataclass(frozen=True)
class RedisProbe:
    """Healthy once the server answers PING."""

    host: str
    port: int
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS
    password: Optional[str] = field(default=None, repr=False)
    kind: ClassVar[ProbeKind] = ProbeKind.REDIS

    def describe(self) -> str:
        return f"redis PING {self.host}:{self.port}"


HealthProbe = Union[TcpProbe, HttpProbe, ExecProbe, RedisProbe]


@dataclass(frozen=True)
class Upstream:
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ServiceSpec:
    """Static description of one service."""

    name: str
    command: Tuple[str, ...]
    dependencies: Tuple[str, ...] = ()
    health_probe: Optional[HealthProbe] = None
    route_prefix: Optional[str] = None
    upgrade_prefix: Optional[str] = None
    upstream: Optional[Upstream] = None
    restart_policy: RestartPolicy = RestartPolicy.NEVER
    max_restarts: Optional[int] = None
    working_dir: Optional[Path] = None
    environment: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}), compare=False)
    pid_file: Optional[Path] = None
    grace_period_seconds: Optional[float] = None
    health_timeout_seconds: Optional[float] = None
    description: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.environment, MappingProxyType):
            object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    @property
    def prefixes(self) -> Tuple[str, ...]:
        return tuple(p for p in (self.route_prefix, self.upgrade_prefix) if p)

    def resolved_pid_file(self) -> Optional[Path]:
        if self.pid_file is None:
            return None
        if self.pid_file.is_absolute() or self.working_dir is None:
            return self.pid_file
        return self.working_dir / self.pid_file
