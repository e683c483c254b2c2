"""Tests for errors module."""

from __future__ import annotations

from devherd.errors import (
    CyclicDependencyError,
    DevherdError,
    HealthTimeoutError,
    ProcessExitError,
    ProcessStartError,
    ProxyUpstreamUnavailable,
    StartupAbortedError,
    ValidationError,
)


class TestStartupAbortedError:
    """Tests for StartupAbortedError."""

    def test_names_failure_cause_and_blocked(self) -> None:
        """Message lists the failed service, its cause and the sorted blocked set."""
        error = StartupAbortedError(["db"], {"worker", "api"}, {"db": "health timeout"})

        assert str(error) == "Startup aborted: failed service(s) db (health timeout); never started: api, worker"
        assert error.service_name == "db"
        assert error.blocked == ("api", "worker")

    def test_omits_blocked_clause_when_nothing_blocked(self) -> None:
        """No trailing clause without blocked services."""
        assert str(StartupAbortedError(["db"], [])) == "Startup aborted: failed service(s) db"


class TestProcessExitError:
    """Tests for ProcessExitError."""

    def test_describes_exit_code(self) -> None:
        """Plain exit codes are reported as such."""
        error = ProcessExitError("api", 3)

        assert str(error) == "Service 'api' exited unexpectedly (exit code 3)"
        assert error.signal is None

    def test_describes_signal(self) -> None:
        """Negative return codes become the signal number."""
        killed = ProcessExitError("api", -9)

        assert killed.signal == 9
        assert "killed by signal 9" in str(killed)


class TestTaxonomy:
    """Tests for the builtin bases and helper constructors."""

    def test_hierarchy(self) -> None:
        """Each error is also catchable as its builtin counterpart."""
        assert issubclass(CyclicDependencyError, ValidationError)
        assert issubclass(ValidationError, ValueError)
        assert isinstance(HealthTimeoutError("db", 5), TimeoutError)
        assert isinstance(ProxyUpstreamUnavailable("/api", "api", "refused"), ConnectionError)
        assert isinstance(ProcessStartError("api", "missing"), DevherdError)

    def test_health_timeout_message_includes_last_probe(self) -> None:
        """The last probe failure is appended for diagnostics."""
        error = HealthTimeoutError("db", 2.5, last_failure="refused: connection refused")

        assert str(error) == "Service 'db' did not become healthy within 2.5s (last probe: refused: connection refused)"

    def test_cycle_is_rendered_as_path(self) -> None:
        """The cycle is kept and joined with arrows."""
        error = CyclicDependencyError(["a", "b", "a"])

        assert error.cycle == ("a", "b", "a")
        assert str(error) == "Dependency cycle detected: a -> b -> a"

    def test_unknown_dependency_sets_field(self) -> None:
        """The offending field path is attached."""
        error = ValidationError.unknown_dependency("api", "ghost")

        assert error.field == "services.api.depends_on"
        assert "ghost" in str(error)
