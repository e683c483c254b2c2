"""Shared configuration helpers and dataclasses."""

from .errors import ConfigurationError
from .runtime import (
    env_bool,
    env_float,
    env_int,
    env_path,
    env_seconds,
    env_str,
)
from .settings import (
    HealthSettings,
    OrchestratorSettings,
    ProxySettings,
    RestartSettings,
    ShutdownSettings,
)

__all__ = [
    "ConfigurationError",
    "HealthSettings",
    "OrchestratorSettings",
    "ProxySettings",
    "RestartSettings",
    "ShutdownSettings",
    "env_bool",
    "env_float",
    "env_int",
    "env_path",
    "env_seconds",
    "env_str",
]
