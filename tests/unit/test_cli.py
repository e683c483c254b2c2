"""Tests for the devherd command line."""

import logging

import orjson
import pytest

from devherd.cli import EXIT_INVALID_CONFIG, main
from devherd.state_store import OrchestratorPhase, RuntimeState, StateStore
from tests.helpers.stack_helpers import write_definition


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def stack_file(tmp_path):
    return write_definition(
        tmp_path,
        {
            "services": [
                {"name": "db", "command": "postgres -D data", "port": 5432, "healthcheck": {"type": "tcp"}},
                {"name": "api", "command": ["uvicorn", "app:app"], "depends_on": ["db"], "port": 8000, "route_prefix": "/api"},
            ]
        },
    )


def _run(stack_file, tmp_path, *args):
    return main(["-f", str(stack_file), "--runtime-dir", str(tmp_path / "rt"), *args])


def test_plan_prints_waves(stack_file, tmp_path, capsys):
    assert _run(stack_file, tmp_path, "plan") == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "wave 1:"
    assert lines[1].startswith("  db: tcp")
    assert lines[2] == "wave 2:"
    assert lines[3].startswith("  api (after db):")
    assert lines[3].endswith("route /api")


def test_invalid_definition_exits_with_validation_code(tmp_path, capsys):
    path = write_definition(
        tmp_path,
        {"services": [{"name": "api", "command": "serve", "depends_on": ["ghost"]}]},
    )

    assert main(["-f", str(path), "plan"]) == EXIT_INVALID_CONFIG
    assert "ghost" in capsys.readouterr().err


def test_status_without_state(stack_file, tmp_path, capsys):
    assert _run(stack_file, tmp_path, "status") == 0

    assert "No state recorded in" in capsys.readouterr().out


def test_status_reports_recorded_services(stack_file, tmp_path, capsys):
    store = StateStore(tmp_path / "rt" / "state.json")
    store.write(
        RuntimeState.for_current_process(
            OrchestratorPhase.RUNNING,
            proxy_address="127.0.0.1:8080",
            services=[
                {"name": "db", "state": "healthy", "pid": None, "attempt": 1},
                {"name": "api", "state": "pending", "blocked": True},
            ],
        )
    )

    assert _run(stack_file, tmp_path, "status") == 0
    out = capsys.readouterr().out
    assert "Orchestrator: running, proxy on 127.0.0.1:8080" in out
    assert any(line.startswith("db") and "healthy" in line for line in out.splitlines())
    assert any(line.startswith("api") and "blocked" in line for line in out.splitlines())

    assert _run(stack_file, tmp_path, "status", "--json") == 0
    payload = orjson.loads(capsys.readouterr().out)
    assert payload["phase"] == "running"
    assert [record["name"] for record in payload["services"]] == ["db", "api"]


def test_logs_tail(stack_file, tmp_path, capsys):
    logs_dir = tmp_path / "rt" / "logs"
    logs_dir.mkdir(parents=True)
    (logs_dir / "db.log").write_text("one\ntwo\nthree\n", encoding="utf-8")

    assert _run(stack_file, tmp_path, "logs", "db", "--tail", "2") == 0
    assert capsys.readouterr().out.splitlines() == ["two", "three"]


def test_logs_unknown_service(stack_file, tmp_path, capsys):
    assert _run(stack_file, tmp_path, "logs", "ghost") == 1
    assert "unknown service 'ghost'" in capsys.readouterr().err


def test_down_with_nothing_running(stack_file, tmp_path, capsys):
    assert _run(stack_file, tmp_path, "down") == 0
    assert capsys.readouterr().out.strip() == "Nothing running."
