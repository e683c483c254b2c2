"""Pid artifacts: stale lock files left by services and the supervisor's own pid records."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import orjson
import psutil

from ...errors import ProcessStartError

logger = logging.getLogger(__name__)

_CREATE_TIME_TOLERANCE_SECONDS = 1.0


def _read_pid(path: Path) -> Optional[int]:
    try:
        data = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):  # Best-effort PID inspection  # policy_guard: allow-silent-handler
        return None
    if not data:
        return None
    first = data.split()[0]
    return int(first) if first.isdigit() else None


def _command_matches(proc: psutil.Process, command: Sequence[str]) -> bool:
    try:
        cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):  # policy_guard: allow-silent-handler
        return False
    if not cmdline or not command:
        return False
    wanted = os.path.basename(command[0])
    return any(os.path.basename(part) == wanted for part in cmdline[:2])


def clear_stale_pid_file(path: Path, *, service_name: str, command: Sequence[str]) -> bool:
    """Remove a service's leftover pid/lock file before it starts.

    The file is stale when it is unreadable, names a dead process, or names a
    live process that is not running the service's executable (pid reuse).
    Returns True when a file was removed.

    Raises:
        ProcessStartError: The file names a live process running the service's executable.
    """
    if not path.exists():
        return False

    pid = _read_pid(path)
    if pid is not None and pid != os.getpid():
        try:
            proc = psutil.Process(pid)
            if proc.status() != psutil.STATUS_ZOMBIE and _command_matches(proc, command):
                raise ProcessStartError(service_name, f"{path} names live process {pid} ({' '.join(proc.cmdline())})")
        except (psutil.NoSuchProcess, psutil.AccessDenied):  # policy_guard: allow-silent-handler
            # Exited while being inspected, or not ours to inspect: not the service.
            logger.debug("Pid %s from %s is gone or inaccessible", pid, path)

    try:
        path.unlink()
    except FileNotFoundError:  # policy_guard: allow-silent-handler
        return False
    logger.info("Removed stale pid file %s for %s (recorded pid %s)", path, service_name, pid if pid is not None else "unreadable")
    return True


@dataclass(frozen=True)
class PidRecord:
    """Supervisor bookkeeping for one spawned process."""

    service: str
    pid: int
    create_time: float
    attempt: int
    command: tuple

    def to_json(self) -> bytes:
        return orjson.dumps(
            {
                "service": self.service,
                "pid": self.pid,
                "create_time": self.create_time,
                "attempt": self.attempt,
                "command": list(self.command),
            }
        )

    @classmethod
    def from_json(cls, payload: bytes) -> "PidRecord":
        data = orjson.loads(payload)
        return cls(
            service=str(data["service"]),
            pid=int(data["pid"]),
            create_time=float(data["create_time"]),
            attempt=int(data.get("attempt", 1)),
            command=tuple(data.get("command", ())),
        )

    def live_process(self) -> Optional[psutil.Process]:
        """Return the process if it is still the one recorded (guards against pid reuse)."""
        try:
            proc = psutil.Process(self.pid)
            if abs(proc.create_time() - self.create_time) > _CREATE_TIME_TOLERANCE_SECONDS:
                return None
            if proc.status() == psutil.STATUS_ZOMBIE:
                return None
        except (psutil.NoSuchProcess, psutil.AccessDenied):  # policy_guard: allow-silent-handler
            return None
        return proc


class PidRecordStore:
    """Reads and writes ``<runtime>/pids/<service>.pid`` records."""

    def __init__(self, pids_dir: Path) -> None:
        self.pids_dir = pids_dir

    def path_for(self, service_name: str) -> Path:
        return self.pids_dir / f"{service_name}.pid"

    def write(self, service_name: str, pid: int, *, attempt: int, command: Sequence[str]) -> PidRecord:
        self.pids_dir.mkdir(parents=True, exist_ok=True)
        try:
            create_time = psutil.Process(pid).create_time()
        except psutil.NoSuchProcess:  # policy_guard: allow-silent-handler
            create_time = time.time()
        record = PidRecord(service_name, pid, create_time, attempt, tuple(command))
        target = self.path_for(service_name)
        tmp = target.with_suffix(".pid.tmp")
        tmp.write_bytes(record.to_json())
        os.replace(tmp, target)
        return record

    def read(self, service_name: str) -> Optional[PidRecord]:
        path = self.path_for(service_name)
        try:
            return PidRecord.from_json(path.read_bytes())
        except FileNotFoundError:  # policy_guard: allow-silent-handler
            return None
        except (OSError, ValueError, KeyError, TypeError, orjson.JSONDecodeError) as exc:  # policy_guard: allow-silent-handler
            logger.warning("Ignoring unreadable pid record %s: %s", path, exc)
            return None

    def remove(self, service_name: str, *, pid: Optional[int] = None) -> None:
        """Delete the record; with *pid*, only if it still describes that pid."""
        if pid is not None:
            current = self.read(service_name)
            if current is not None and current.pid != pid:
                return
        try:
            self.path_for(service_name).unlink()
        except FileNotFoundError:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
            logger.debug("Pid record for %s already removed", service_name)

    def all(self) -> list:
        if not self.pids_dir.exists():
            return []
        records = []
        for path in sorted(self.pids_dir.glob("*.pid")):
            record = self.read(path.stem)
            if record is not None:
                records.append(record)
        return records
