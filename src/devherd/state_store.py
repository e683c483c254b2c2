"""Runtime state snapshot shared between ``up`` and the ``status``/``down`` commands."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
import psutil

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class OrchestratorPhase:
    STARTING = "starting"
    RUNNING = "running"
    ABORTED = "aborted"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class RuntimeState:
    """What ``up`` publishes about itself and its services."""

    orchestrator_pid: int
    orchestrator_create_time: Optional[float]
    phase: str
    definition: Optional[str] = None
    proxy_address: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    shutdown_waves: List[List[str]] = field(default_factory=list)
    services: List[Dict[str, Any]] = field(default_factory=list)
    version: int = STATE_FORMAT_VERSION

    @classmethod
    def for_current_process(cls, phase: str, **kwargs: Any) -> "RuntimeState":
        pid = os.getpid()
        return cls(orchestrator_pid=pid, orchestrator_create_time=psutil.Process(pid).create_time(), phase=phase, **kwargs)

    def service(self, name: str) -> Optional[Dict[str, Any]]:
        for record in self.services:
            if record.get("name") == name:
                return record
        return None

    def orchestrator_alive(self) -> bool:
        return process_matches(self.orchestrator_pid, self.orchestrator_create_time)


def process_matches(pid: Optional[int], create_time: Optional[float] = None) -> bool:
    """True when *pid* is alive (and, with *create_time*, is the same process)."""
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if create_time is not None and abs(proc.create_time() - create_time) > 1.0:
            return False
    except (psutil.NoSuchProcess, psutil.AccessDenied):  # policy_guard: allow-silent-handler
        return False
    return True


class StateStore:
    """Reads and atomically replaces ``state.json``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def write(self, state: RuntimeState) -> None:
        state.updated_at = time.time()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_bytes(orjson.dumps(asdict(state), option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))
        os.replace(tmp, self.path)

    def read(self) -> Optional[RuntimeState]:
        try:
            payload = orjson.loads(self.path.read_bytes())
        except FileNotFoundError:  # policy_guard: allow-silent-handler
            return None
        except (OSError, orjson.JSONDecodeError) as exc:  # policy_guard: allow-silent-handler
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return None
        if not isinstance(payload, dict) or payload.get("version") != STATE_FORMAT_VERSION:
            logger.warning("Ignoring state file %s with unknown format", self.path)
            return None
        known = {name for name in RuntimeState.__dataclass_fields__}
        try:
            return RuntimeState(**{key: value for key, value in payload.items() if key in known})
        except TypeError as exc:  # policy_guard: allow-silent-handler
            logger.warning("Ignoring incomplete state file %s: %s", self.path, exc)
            return None

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
            logger.debug("State file %s already removed", self.path)
