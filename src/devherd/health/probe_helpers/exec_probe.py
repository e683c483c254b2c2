"""Command-exit-status probing."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Mapping, Optional, Tuple

from ...registry.models import ExecProbe
from ..types import ProbeOutcome

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 200


async def run_exec_probe(
    probe: ExecProbe,
    timeout: float,
    *,
    environment: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
) -> Tuple[ProbeOutcome, str]:
    """Run the probe command; exit status 0 within *timeout* is healthy."""
    env = {**os.environ, **(environment or {})}
    try:
        process = await asyncio.create_subprocess_exec(
            *probe.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(cwd) if cwd else None,
        )
    except OSError as exc:  # policy_guard: allow-silent-handler
        return ProbeOutcome.ERROR, f"cannot run {probe.command[0]}: {exc}"

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:  # policy_guard: allow-silent-handler
        await _kill(process)
        return ProbeOutcome.TIMEOUT, f"{probe.command[0]} did not exit within {timeout:g}s"
    except asyncio.CancelledError:
        await _kill(process)
        raise

    if process.returncode == 0:
        return ProbeOutcome.SUCCESS, ""
    tail = stderr.decode("utf-8", "replace").strip()[-_STDERR_TAIL_CHARS:] if stderr else ""
    detail = f"exit code {process.returncode}"
    if tail:
        detail += f": {tail}"
    return ProbeOutcome.NONZERO_EXIT, detail


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
        logger.debug("Probe process %s already gone", process.pid)
    await process.wait()
