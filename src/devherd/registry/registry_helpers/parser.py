"""Field-level parsing of raw service definitions into ``ServiceSpec`` values."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from ...config.runtime_helpers import DotenvLoader, interpolate, interpolate_all
from ...errors import ValidationError
from ..models import (
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_UPSTREAM_HOST,
    ExecProbe,
    HealthProbe,
    HttpProbe,
    RedisProbe,
    RestartPolicy,
    ServiceSpec,
    TcpProbe,
    Upstream,
)

_SERVICE_KEYS = frozenset(
    {
        "name",
        "command",
        "depends_on",
        "healthcheck",
        "route_prefix",
        "upgrade_prefix",
        "host",
        "port",
        "restart",
        "max_restarts",
        "working_dir",
        "environment",
        "env_file",
        "pid_file",
        "grace_period_seconds",
        "description",
    }
)
_COMMON_PROBE_KEYS = frozenset({"type", "timeout_seconds", "ready_timeout_seconds"})
_PROBE_KEYS = {
    "tcp": _COMMON_PROBE_KEYS | {"host", "port"},
    "http": _COMMON_PROBE_KEYS | {"url", "path", "host", "port"},
    "exec": _COMMON_PROBE_KEYS | {"command"},
    "redis": _COMMON_PROBE_KEYS | {"host", "port", "password"},
}


def validate_name(raw: Any, field: str = "name") -> str:
    if not isinstance(raw, str) or not raw:
        raise ValidationError.missing_field(field)
    if any(ch.isspace() for ch in raw):
        raise ValidationError.invalid_value(field, raw, "Service names may not contain whitespace")
    return raw


def load_env_files(raw: Any, base_dir: Path, field: str) -> Dict[str, str]:
    """Merge one or more dotenv files; later files win."""
    if raw is None:
        return {}
    paths = [raw] if isinstance(raw, str) else raw
    if not isinstance(paths, list) or not all(isinstance(item, str) and item for item in paths):
        raise ValidationError.invalid_type(field, raw, "a path or a list of paths")
    merged: Dict[str, str] = {}
    for item in paths:
        path = Path(item).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        merged.update(DotenvLoader.load_from_file(path, required=True))
    return merged


def parse_environment(raw: Any, context: Mapping[str, str], field: str) -> Dict[str, str]:
    """Parse an ``environment`` object, interpolating each value against *context*."""
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ValidationError.invalid_type(field, raw, "an object of KEY: value pairs")
    parsed: Dict[str, str] = {}
    scope = dict(context)
    for key, value in raw.items():
        if not isinstance(key, str) or not key or any(ch.isspace() for ch in key):
            raise ValidationError.invalid_value(field, key, "Variable names must be non-empty without whitespace")
        if value is None:
            text = ""
        elif isinstance(value, bool):
            text = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            text = str(value)
        else:
            raise ValidationError.invalid_type(f"{field}.{key}", value, "a scalar")
        text = interpolate(text, scope, field=f"{field}.{key}")
        parsed[key] = text
        scope[key] = text
    return parsed


def parse_command(raw: Any, context: Mapping[str, str], field: str) -> Tuple[str, ...]:
    """Accept an argv list or a string split with shell quoting rules (never run through a shell)."""
    if isinstance(raw, str):
        try:
            argv = shlex.split(raw)
        except ValueError as exc:
            raise ValidationError.invalid_value(field, raw, str(exc)) from exc
    elif isinstance(raw, list) and all(isinstance(item, (str, int, float)) and not isinstance(item, bool) for item in raw):
        argv = [str(item) for item in raw]
    else:
        raise ValidationError.invalid_type(field, raw, "a string or a list of strings")
    if not argv or not argv[0]:
        raise ValidationError.missing_field(field)
    return interpolate_all(argv, context, field=field)


def _parse_port(raw: Any, field: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        if isinstance(raw, str) and raw.isdigit():
            raw = int(raw)
        else:
            raise ValidationError.invalid_type(field, raw, "an integer port")
    if not 0 < raw < 65536:
        raise ValidationError.invalid_value(field, raw, "Ports must be between 1 and 65535")
    return raw


def _parse_seconds(raw: Any, field: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValidationError.invalid_type(field, raw, "a number of seconds")
    if raw <= 0:
        raise ValidationError.invalid_value(field, raw, "Must be positive")
    return float(raw)


def _parse_prefix(raw: Any, field: str) -> Optional[str]:
    if raw is None:
        return None
    if not isinstance(raw, str) or not raw.startswith("/"):
        raise ValidationError.invalid_value(field, raw, "Route prefixes must start with '/'")
    if any(ch.isspace() for ch in raw):
        raise ValidationError.invalid_value(field, raw, "Route prefixes may not contain whitespace")
    return raw


def _text(raw: Any, context: Mapping[str, str], field: str) -> str:
    if not isinstance(raw, str) or not raw:
        raise ValidationError.invalid_type(field, raw, "a non-empty string")
    return interpolate(raw, context, field=field)


def parse_probe(
    raw: Any,
    context: Mapping[str, str],
    upstream: Optional[Upstream],
    field: str,
) -> Optional[HealthProbe]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ValidationError.invalid_type(field, raw, "an object")
    kind = raw.get("type")
    if not isinstance(kind, str) or kind not in _PROBE_KEYS:
        raise ValidationError.invalid_value(f"{field}.type", kind, f"Expected one of: {', '.join(sorted(_PROBE_KEYS))}")
    unknown = set(raw) - _PROBE_KEYS[kind]
    if unknown:
        raise ValidationError.invalid_value(field, sorted(unknown)[0], f"Unknown key for a {kind} probe")

    default_host = upstream.host if upstream else DEFAULT_UPSTREAM_HOST
    host = _text(raw["host"], context, f"{field}.host") if "host" in raw else default_host

    def _port(default: Optional[int]) -> int:
        if "port" in raw:
            return _parse_port(raw["port"], f"{field}.port")
        if default is None:
            raise ValidationError.missing_field(f"{field}.port", "no service port to default to")
        return default

    timeout = _parse_seconds(raw.get("timeout_seconds", DEFAULT_PROBE_TIMEOUT_SECONDS), f"{field}.timeout_seconds")
    service_port = upstream.port if upstream else None
    if kind == "tcp":
        return TcpProbe(host=host, port=_port(service_port), timeout_seconds=timeout)
    if kind == "http":
        if "url" in raw:
            url = _text(raw["url"], context, f"{field}.url")
            parts = urlsplit(url)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise ValidationError.invalid_value(f"{field}.url", url, "Expected an absolute http(s) URL")
            return HttpProbe(url=url, timeout_seconds=timeout)
        path = _text(raw.get("path", "/"), context, f"{field}.path")
        if not path.startswith("/"):
            path = "/" + path
        return HttpProbe(url=f"http://{host}:{_port(service_port)}{path}", timeout_seconds=timeout)
    if kind == "exec":
        return ExecProbe(command=parse_command(raw.get("command"), context, f"{field}.command"), timeout_seconds=timeout)
    password = raw.get("password")
    if password is not None:
        password = _text(password, context, f"{field}.password")
    return RedisProbe(host=host, port=_port(service_port or 6379), timeout_seconds=timeout, password=password)


def parse_dependencies(raw: Any, field: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        # compose long form: {"db": {"condition": ...}}
        raw = list(raw)
    if not isinstance(raw, list):
        raise ValidationError.invalid_type(field, raw, "a list of service names")
    seen: Dict[str, None] = {}
    for item in raw:
        seen.setdefault(validate_name(item, field), None)
    return tuple(seen)


def parse_service(
    raw: Any,
    name: str,
    *,
    base_dir: Path,
    shared_environment: Mapping[str, str],
) -> ServiceSpec:
    """Build a validated ``ServiceSpec`` from one raw definition object."""
    field = f"services.{name}"
    if not isinstance(raw, Mapping):
        raise ValidationError.invalid_type(field, raw, "an object")
    unknown = set(raw) - _SERVICE_KEYS
    if unknown:
        raise ValidationError.invalid_value(field, sorted(unknown)[0], "Unknown service key")

    own_env = dict(shared_environment)
    own_env.update(load_env_files(raw.get("env_file"), base_dir, f"{field}.env_file"))
    context = {**os.environ, **own_env}
    own_env.update(parse_environment(raw.get("environment"), context, f"{field}.environment"))
    context = {**os.environ, **own_env}

    upstream = None
    if "port" in raw:
        host = _text(raw.get("host", DEFAULT_UPSTREAM_HOST), context, f"{field}.host")
        upstream = Upstream(host=host, port=_parse_port(raw["port"], f"{field}.port"))
    elif "host" in raw:
        raise ValidationError.missing_field(f"{field}.port", "host given without a port")

    route_prefix = _parse_prefix(raw.get("route_prefix"), f"{field}.route_prefix")
    upgrade_prefix = _parse_prefix(raw.get("upgrade_prefix"), f"{field}.upgrade_prefix")
    if (route_prefix or upgrade_prefix) and upstream is None:
        raise ValidationError.missing_field(f"{field}.port", "routed services need an upstream port")

    working_dir = None
    if raw.get("working_dir") is not None:
        working_dir = Path(_text(raw["working_dir"], context, f"{field}.working_dir")).expanduser()
        if not working_dir.is_absolute():
            working_dir = base_dir / working_dir

    pid_file = None
    if raw.get("pid_file") is not None:
        pid_file = Path(_text(raw["pid_file"], context, f"{field}.pid_file")).expanduser()

    grace = raw.get("grace_period_seconds")
    max_restarts = raw.get("max_restarts")
    if max_restarts is not None and (isinstance(max_restarts, bool) or not isinstance(max_restarts, int) or max_restarts < 0):
        raise ValidationError.invalid_value(f"{field}.max_restarts", max_restarts, "Must be a non-negative integer")

    healthcheck = raw.get("healthcheck")
    health_timeout = None
    if isinstance(healthcheck, Mapping) and "ready_timeout_seconds" in healthcheck:
        health_timeout = _parse_seconds(healthcheck["ready_timeout_seconds"], f"{field}.healthcheck.ready_timeout_seconds")

    description = raw.get("description", "")
    if not isinstance(description, str):
        raise ValidationError.invalid_type(f"{field}.description", description, "a string")

    return ServiceSpec(
        name=name,
        command=parse_command(raw.get("command"), context, f"{field}.command"),
        dependencies=parse_dependencies(raw.get("depends_on"), f"{field}.depends_on"),
        health_probe=parse_probe(healthcheck, context, upstream, f"{field}.healthcheck"),
        route_prefix=route_prefix,
        upgrade_prefix=upgrade_prefix,
        upstream=upstream,
        restart_policy=RestartPolicy.parse(raw.get("restart"), field_name=f"{field}.restart"),
        max_restarts=max_restarts,
        working_dir=working_dir,
        environment=own_env,
        pid_file=pid_file,
        grace_period_seconds=_parse_seconds(grace, f"{field}.grace_period_seconds") if grace is not None else None,
        health_timeout_seconds=health_timeout,
        description=description,
    )
