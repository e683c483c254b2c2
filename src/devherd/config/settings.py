"""Orchestrator settings assembled from the environment and the stack definition."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigurationError
from .runtime import env_int, env_path, env_seconds, env_str

DEFAULT_RUNTIME_DIR = Path(".devherd")
DEFAULT_MAX_BODY_BYTES = 64 * 1024 * 1024

# Zero is meaningless for these; liveness_interval_seconds=0 disables liveness instead
_POSITIVE_SETTINGS = (
    "health.interval_seconds",
    "health.timeout_seconds",
    "health.probe_timeout_seconds",
    "health.liveness_failure_threshold",
    "proxy.max_body_bytes",
    "proxy.max_header_bytes",
    "proxy.upstream_timeout_seconds",
    "proxy.connect_timeout_seconds",
)


@dataclass(frozen=True)
class HealthSettings:
    """Polling cadence for readiness and liveness probes."""

    interval_seconds: float = 1.0
    timeout_seconds: float = 60.0
    probe_timeout_seconds: float = 5.0
    liveness_interval_seconds: float = 0.0  # 0 disables periodic re-checks
    liveness_failure_threshold: int = 3

    @property
    def liveness_enabled(self) -> bool:
        return self.liveness_interval_seconds > 0


@dataclass(frozen=True)
class ProxySettings:
    """Listening address and limits for the reverse proxy."""

    host: str = "127.0.0.1"
    port: int = 8080
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    max_header_bytes: int = 64 * 1024
    upstream_timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 5.0
    retry_after_seconds: int = 5


@dataclass(frozen=True)
class RestartSettings:
    """Exponential backoff applied to policy-driven restarts."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter_range: float = 0.0
    reset_after_seconds: float = 60.0


@dataclass(frozen=True)
class ShutdownSettings:
    grace_period_seconds: float = 10.0


@dataclass(frozen=True)
class OrchestratorSettings:
    """Complete runtime configuration for one orchestrator run."""

    runtime_dir: Path = DEFAULT_RUNTIME_DIR
    health: HealthSettings = field(default_factory=HealthSettings)
    proxy: ProxySettings = field(default_factory=ProxySettings)
    restart: RestartSettings = field(default_factory=RestartSettings)
    shutdown: ShutdownSettings = field(default_factory=ShutdownSettings)

    @property
    def logs_dir(self) -> Path:
        return self.runtime_dir / "logs"

    @property
    def pids_dir(self) -> Path:
        return self.runtime_dir / "pids"

    @property
    def state_path(self) -> Path:
        return self.runtime_dir / "state.json"

    @property
    def lock_path(self) -> Path:
        return self.runtime_dir / "orchestrator.lock"

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """Build settings from ``DEVHERD_*`` environment variables."""
        health_defaults = HealthSettings()
        proxy_defaults = ProxySettings()
        shutdown_defaults = ShutdownSettings()
        settings = cls(
            runtime_dir=env_path("DEVHERD_RUNTIME_DIR", DEFAULT_RUNTIME_DIR),
            health=HealthSettings(
                interval_seconds=env_seconds("DEVHERD_HEALTH_INTERVAL_SECONDS", health_defaults.interval_seconds),
                timeout_seconds=env_seconds("DEVHERD_HEALTH_TIMEOUT_SECONDS", health_defaults.timeout_seconds),
                probe_timeout_seconds=env_seconds("DEVHERD_PROBE_TIMEOUT_SECONDS", health_defaults.probe_timeout_seconds),
                liveness_interval_seconds=env_seconds(
                    "DEVHERD_LIVENESS_INTERVAL_SECONDS", health_defaults.liveness_interval_seconds
                ),
                liveness_failure_threshold=env_int(
                    "DEVHERD_LIVENESS_FAILURE_THRESHOLD", health_defaults.liveness_failure_threshold
                ),
            ),
            proxy=ProxySettings(
                host=env_str("DEVHERD_PROXY_HOST", proxy_defaults.host),
                port=env_int("DEVHERD_PROXY_PORT", proxy_defaults.port),
                max_body_bytes=env_int("DEVHERD_MAX_BODY_BYTES", proxy_defaults.max_body_bytes),
                upstream_timeout_seconds=env_seconds(
                    "DEVHERD_UPSTREAM_TIMEOUT_SECONDS", proxy_defaults.upstream_timeout_seconds
                ),
                connect_timeout_seconds=env_seconds(
                    "DEVHERD_CONNECT_TIMEOUT_SECONDS", proxy_defaults.connect_timeout_seconds
                ),
            ),
            shutdown=ShutdownSettings(
                grace_period_seconds=env_seconds("DEVHERD_GRACE_PERIOD_SECONDS", shutdown_defaults.grace_period_seconds),
            ),
        )
        _require_positive(settings)
        return settings

    def with_sections(self, sections: Mapping[str, Any]) -> "OrchestratorSettings":
        """Return a copy with ``health``/``proxy``/``restart``/``shutdown`` sections applied."""
        updates: dict[str, Any] = {}
        for section_name in ("health", "proxy", "restart", "shutdown"):
            section = sections.get(section_name)
            if section is None:
                continue
            if not isinstance(section, Mapping):
                raise ConfigurationError(f"{section_name} must be an object", field=section_name)
            updates[section_name] = _apply_section(getattr(self, section_name), section_name, section)
        return dataclasses.replace(self, **updates) if updates else self

    def with_runtime_dir(self, runtime_dir: Optional[Path]) -> "OrchestratorSettings":
        if runtime_dir is None:
            return self
        return dataclasses.replace(self, runtime_dir=Path(runtime_dir).expanduser())


def _apply_section(current: Any, section_name: str, section: Mapping[str, Any]) -> Any:
    known = {f.name: f for f in dataclasses.fields(current)}
    changes: dict[str, Any] = {}
    for key, raw in section.items():
        if key not in known:
            raise ConfigurationError(
                f"Unknown setting {section_name}.{key} (known: {', '.join(sorted(known))})",
                field=f"{section_name}.{key}",
            )
        default = getattr(current, key)
        changes[key] = _coerce_setting(f"{section_name}.{key}", raw, default)
    return dataclasses.replace(current, **changes)


def _coerce_setting(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, str):
        if not isinstance(raw, str) or not raw.strip():
            raise ConfigurationError.invalid_type(name, raw, "a non-empty string")
        return raw
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigurationError.invalid_type(name, raw, "a number")
    if raw < 0:
        raise ConfigurationError.invalid_value(name, raw, "Must be non-negative")
    if raw == 0 and name in _POSITIVE_SETTINGS:
        raise ConfigurationError.invalid_value(name, raw, "Must be greater than zero")
    if isinstance(default, int):
        if raw != int(raw):
            raise ConfigurationError.invalid_value(name, raw, "Must be a whole number")
        return int(raw)
    return float(raw)


def _require_positive(settings: OrchestratorSettings) -> None:
    for name in _POSITIVE_SETTINGS:
        section_name, key = name.split(".")
        value = getattr(getattr(settings, section_name), key)
        if value <= 0:
            raise ConfigurationError.invalid_value(name, value, "Must be greater than zero")
