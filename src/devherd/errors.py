"""Error taxonomy shared by the orchestrator components."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence


class DevherdError(Exception):
    """Base class for every error raised by devherd."""


class ValidationError(DevherdError, ValueError):
    """Raised when a stack definition is malformed. Fatal, reported before any process starts."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    @classmethod
    def missing_field(cls, field: str, context: str = "") -> "ValidationError":
        """Create error for a required field that is absent or empty."""
        msg = f"{field} is missing or empty"
        if context:
            msg += f": {context}"
        return cls(msg, field=field)

    @classmethod
    def invalid_value(cls, field: str, value, reason: str = "") -> "ValidationError":
        """Create error for a field holding an unusable value."""
        msg = f"Invalid value for {field}: {value!r}"
        if reason:
            msg += f". {reason}"
        return cls(msg, field=field)

    @classmethod
    def invalid_type(cls, field: str, value, expected: str) -> "ValidationError":
        """Create error for a field of the wrong type."""
        return cls(f"{field} must be {expected} (got {type(value).__name__})", field=field)

    @classmethod
    def duplicate(cls, field: str, value: str) -> "ValidationError":
        """Create error for a value that must be unique."""
        return cls(f"Duplicate {field}: {value!r}", field=field)

    @classmethod
    def unknown_dependency(cls, service_name: str, dependency: str) -> "ValidationError":
        """Create error for a dependency reference that does not resolve."""
        return cls(
            f"Service {service_name!r} depends on unknown service {dependency!r}",
            field=f"services.{service_name}.depends_on",
        )


class CyclicDependencyError(ValidationError):
    """Raised at load time when the dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}", field="depends_on")


class HealthTimeoutError(DevherdError, TimeoutError):
    """Raised when a service never passes its health probe within the overall timeout."""

    def __init__(self, service_name: str, timeout_seconds: float, last_failure: Optional[str] = None) -> None:
        self.service_name = service_name
        self.timeout_seconds = timeout_seconds
        self.last_failure = last_failure
        message = f"Service {service_name!r} did not become healthy within {timeout_seconds:g}s"
        if last_failure:
            message += f" (last probe: {last_failure})"
        super().__init__(message)


class StartupAbortedError(DevherdError, RuntimeError):
    """Raised when a required dependency never becomes healthy during startup."""

    def __init__(self, failed: Sequence[str], blocked: Iterable[str], causes: Optional[dict] = None) -> None:
        self.failed = tuple(failed)
        self.blocked = tuple(sorted(blocked))
        self.causes = dict(causes or {})
        parts = []
        for name in self.failed:
            cause = self.causes.get(name)
            parts.append(f"{name} ({cause})" if cause else name)
        message = f"Startup aborted: failed service(s) {', '.join(parts)}"
        if self.blocked:
            message += f"; never started: {', '.join(self.blocked)}"
        super().__init__(message)

    @property
    def service_name(self) -> str:
        return self.failed[0]


class ProcessExitError(DevherdError, RuntimeError):
    """Captures an unexpected process exit for diagnostics and restart-policy evaluation."""

    def __init__(self, service_name: str, returncode: Optional[int]) -> None:
        self.service_name = service_name
        self.returncode = returncode
        self.signal = -returncode if returncode is not None and returncode < 0 else None
        if self.signal is not None:
            detail = f"killed by signal {self.signal}"
        else:
            detail = f"exit code {returncode}"
        super().__init__(f"Service {service_name!r} exited unexpectedly ({detail})")


class ProcessStartError(DevherdError, RuntimeError):
    """Raised when a service process cannot be spawned."""

    def __init__(self, service_name: str, reason: str) -> None:
        self.service_name = service_name
        self.reason = reason
        super().__init__(f"Failed to start {service_name!r}: {reason}")


class OrchestratorAlreadyRunning(DevherdError, RuntimeError):
    """Raised when another orchestrator already owns the runtime directory."""


class ProxyUpstreamUnavailable(DevherdError, ConnectionError):
    """Raised per request when the routed upstream cannot serve it."""

    def __init__(self, prefix: str, service_name: str, reason: str) -> None:
        self.prefix = prefix
        self.service_name = service_name
        self.reason = reason
        super().__init__(f"Upstream {service_name!r} for {prefix!r} unavailable: {reason}")


__all__ = [
    "CyclicDependencyError",
    "DevherdError",
    "HealthTimeoutError",
    "OrchestratorAlreadyRunning",
    "ProcessExitError",
    "ProcessStartError",
    "ProxyUpstreamUnavailable",
    "StartupAbortedError",
    "ValidationError",
]
