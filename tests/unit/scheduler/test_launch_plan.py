"""Tests for LaunchPlan."""

from devherd.registry import Registry, TcpProbe
from devherd.scheduler import LaunchPlan
from tests.helpers.stack_helpers import make_spec


def _registry():
    return Registry(
        [
            make_spec("db", health_probe=TcpProbe("127.0.0.1", 5432)),
            make_spec("cache"),
            make_spec("api", ("db", "cache"), route_prefix="/api"),
            make_spec("worker", ("api",)),
        ]
    )


def test_waves_and_orders():
    plan = LaunchPlan.from_registry(_registry())

    assert plan.waves == (("db", "cache"), ("api",), ("worker",))
    assert len(plan) == 3
    assert plan.startup_order() == ["db", "cache", "api", "worker"]
    assert plan.shutdown_waves() == [("worker",), ("api",), ("db", "cache")]
    assert plan.wave_of() == {"db": 0, "cache": 0, "api": 1, "worker": 2}


def test_describe_lists_probe_and_route():
    registry = _registry()

    lines = LaunchPlan.from_registry(registry).describe(registry)

    assert lines == [
        "wave 1:",
        "  db: tcp 127.0.0.1:5432",
        "  cache: no healthcheck",
        "wave 2:",
        "  api (after db, cache): no healthcheck route /api",
        "wave 3:",
        "  worker (after api): no healthcheck",
    ]
