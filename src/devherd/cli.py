"""Command line entry point: ``devherd {up,down,status,logs,plan}``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import orjson

from .config import OrchestratorSettings, env_str
from .config_loader import DEFAULT_DEFINITION_FILE, StackDefinition, load_stack
from .errors import DevherdError, OrchestratorAlreadyRunning, ValidationError
from .logging_config import setup_logging
from .orchestrator import Orchestrator, stop_stack
from .scheduler import LaunchPlan
from .service_runner import EXIT_INTERRUPTED, run_async_service
from .state_store import OrchestratorPhase, StateStore, process_matches
from .supervisor.supervisor_helpers import follow, service_log_path, tail_lines

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID_CONFIG = 2

ORCHESTRATOR_LOG_NAME = "orchestrator"


def _definition_path(args: argparse.Namespace) -> Path:
    return Path(args.file or env_str("DEVHERD_FILE", or_value=DEFAULT_DEFINITION_FILE))


def _apply_overrides(settings: OrchestratorSettings, args: argparse.Namespace) -> OrchestratorSettings:
    if args.runtime_dir:
        settings = settings.with_runtime_dir(Path(args.runtime_dir).expanduser().resolve())
    port = getattr(args, "port", None)
    if port is not None:
        settings = replace(settings, proxy=replace(settings.proxy, port=port))
    return settings


def load_definition(args: argparse.Namespace) -> StackDefinition:
    stack = load_stack(_definition_path(args))
    return replace(stack, settings=_apply_overrides(stack.settings, args))


def resolve_settings(args: argparse.Namespace) -> OrchestratorSettings:
    """Settings for commands that can run without a valid definition file."""
    path = _definition_path(args)
    if path.exists():
        try:
            return load_definition(args).settings
        except ValidationError as exc:  # policy_guard: allow-silent-handler
            logger.warning("Ignoring invalid definition %s: %s", path, exc)
    return _apply_overrides(OrchestratorSettings.from_env(), args)


def cmd_up(args: argparse.Namespace) -> int:
    stack = load_definition(args)
    settings = stack.settings
    setup_logging(ORCHESTRATOR_LOG_NAME, level=_level(args), log_dir=settings.runtime_dir)

    async def _orchestrate(shutdown) -> int:
        return await Orchestrator(stack, enable_proxy=not args.no_proxy).run(shutdown)

    try:
        return run_async_service(_orchestrate, lock_path=settings.lock_path)
    except OrchestratorAlreadyRunning as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE


def cmd_down(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)
    try:
        stopped = asyncio.run(stop_stack(settings))
    except TimeoutError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    if stopped:
        print(f"Stopped: {', '.join(stopped)}")
    else:
        print("Nothing running.")
    return EXIT_OK


def _format_time(value: Optional[float]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value).strftime("%H:%M:%S")


def cmd_status(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)
    state = StateStore(settings.state_path).read()
    if state is None:
        print(f"No state recorded in {settings.runtime_dir}")
        return EXIT_OK

    if args.json:
        sys.stdout.write(orjson.dumps(state.__dict__, option=orjson.OPT_INDENT_2).decode("utf-8") + "\n")
        return EXIT_OK

    phase = state.phase
    if phase not in (OrchestratorPhase.STOPPED, OrchestratorPhase.ABORTED) and not state.orchestrator_alive():
        phase = f"{phase} (orchestrator pid {state.orchestrator_pid} is gone)"
    print(f"Orchestrator: {phase}" + (f", proxy on {state.proxy_address}" if state.proxy_address else ""))
    print(f"{'Service':<20} {'State':<16} {'PID':<8} {'Try':<4} {'Started':<9} {'Checked':<9} Last error")
    print("-" * 90)
    for record in state.services:
        state_text = record.get("state", "unknown")
        if record.get("blocked"):
            state_text = "blocked"
        pid = record.get("pid")
        if pid and state_text not in ("stopped", "failed") and not process_matches(pid):
            state_text = f"{state_text}!dead"
        print(
            f"{record.get('name', '?'):<20} {state_text:<16} {pid or '-'!s:<8} {record.get('attempt', 0)!s:<4} "
            f"{_format_time(record.get('started_at')):<9} {_format_time(record.get('last_health_check_at')):<9} "
            f"{record.get('last_error') or ''}"
        )
    return EXIT_OK


def cmd_logs(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)
    path = service_log_path(settings.logs_dir, args.service)
    known = _known_services(args)
    if (known is not None and args.service not in known) or (known is None and not path.exists()):
        print(f"Error: unknown service {args.service!r}", file=sys.stderr)
        return EXIT_FAILURE

    for line in tail_lines(path, args.tail if args.tail is not None else 0):
        print(line)
    if not args.follow:
        return EXIT_OK

    async def _follow() -> None:
        async for chunk in follow(path):
            sys.stdout.write(chunk)
            sys.stdout.flush()

    asyncio.run(_follow())
    return EXIT_OK


def _known_services(args: argparse.Namespace) -> Optional[Sequence[str]]:
    path = _definition_path(args)
    if not path.exists():
        return None
    try:
        return load_definition(args).registry.names
    except ValidationError:  # policy_guard: allow-silent-handler
        return None


def cmd_plan(args: argparse.Namespace) -> int:
    stack = load_definition(args)
    plan = LaunchPlan.from_registry(stack.registry)
    for line in plan.describe(stack.registry):
        print(line)
    return EXIT_OK


def _level(args: argparse.Namespace) -> Optional[str]:
    return "DEBUG" if args.verbose else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devherd",
        description="Run a multi-service development stack behind one reverse proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-f", "--file", help=f"Stack definition (default: $DEVHERD_FILE or {DEFAULT_DEFINITION_FILE})")
    parser.add_argument("--runtime-dir", help="State, pid and log directory (default: .devherd)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    up = subparsers.add_parser("up", help="Start every service and the proxy; Ctrl+C to stop")
    up.add_argument("--port", type=int, help="Proxy port (overrides the definition)")
    up.add_argument("--no-proxy", action="store_true", help="Start services without the proxy")
    up.set_defaults(func=cmd_up)

    down = subparsers.add_parser("down", help="Stop the running stack in reverse startup order")
    down.set_defaults(func=cmd_down)

    status = subparsers.add_parser("status", help="Show service status")
    status.add_argument("--json", action="store_true", help="Print the raw state file")
    status.set_defaults(func=cmd_status)

    logs = subparsers.add_parser("logs", help="Show a service's captured output")
    logs.add_argument("service", help="Service name")
    logs.add_argument("-f", "--follow", action="store_true", help="Keep streaming new output")
    logs.add_argument("--tail", type=int, help="Number of lines to show")
    logs.set_defaults(func=cmd_logs)

    plan = subparsers.add_parser("plan", help="Validate the definition and print the launch waves")
    plan.set_defaults(func=cmd_plan)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.func is not cmd_up:
        setup_logging(level=_level(args) or "WARNING", quiet=True)
    try:
        return args.func(args)
    except ValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_CONFIG
    except DevherdError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
