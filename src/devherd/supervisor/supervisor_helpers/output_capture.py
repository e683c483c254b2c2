"""Per-service output files under ``<runtime>/logs``."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, BinaryIO, List, Sequence

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024


def service_log_path(logs_dir: Path, service_name: str) -> Path:
    return logs_dir / f"{service_name}.log"


def open_service_log(logs_dir: Path, service_name: str, *, attempt: int, command: Sequence[str]) -> BinaryIO:
    """Open the service's log for appending and mark the start of an attempt.

    The returned handle is passed to the child as stdout and stderr, so the
    process writes straight to disk without a relay in between.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    handle = open(service_log_path(logs_dir, service_name), "ab", buffering=0)
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    banner = f"--- devherd: {service_name} attempt {attempt} at {stamp}: {' '.join(command)}\n"
    handle.write(banner.encode("utf-8"))
    return handle


def tail_lines(path: Path, count: int) -> List[str]:
    """Return the last *count* lines of *path* (all lines when count <= 0)."""
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as handle:
        if count <= 0:
            return handle.read().splitlines()
        return list(deque(handle.read().splitlines(), maxlen=count))


async def follow(path: Path, *, poll_interval: float = 0.25, start_at_end: bool = True) -> AsyncIterator[str]:
    """Yield text appended to *path*, surviving truncation and late creation."""
    position = path.stat().st_size if (start_at_end and path.exists()) else 0
    # Chunk boundaries can split a multi-byte character
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        try:
            size = path.stat().st_size
        except FileNotFoundError:  # policy_guard: allow-silent-handler
            await asyncio.sleep(poll_interval)
            continue
        if size < position:
            logger.debug("%s truncated; reading from the start", path)
            position = 0
            decoder.reset()
        if size == position:
            await asyncio.sleep(poll_interval)
            continue
        with open(path, "rb") as handle:
            handle.seek(position)
            chunk = handle.read(_READ_CHUNK_BYTES)
            position = handle.tell()
        text = decoder.decode(chunk)
        if text:
            yield text


def truncate_logs(logs_dir: Path, service_names: Sequence[str]) -> None:
    """Start every service's log from empty (the default for ``up``)."""
    for name in service_names:
        path = service_log_path(logs_dir, name)
        if path.exists():
            os.truncate(path, 0)
