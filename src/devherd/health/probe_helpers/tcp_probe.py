"""TCP-connect probing."""

import asyncio
import logging
from typing import Tuple

from ...registry.models import TcpProbe
from ..types import ProbeOutcome

logger = logging.getLogger(__name__)


async def run_tcp_probe(probe: TcpProbe, timeout: float) -> Tuple[ProbeOutcome, str]:
    """Open a connection and close it immediately."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(probe.host, probe.port), timeout=timeout)
    except asyncio.TimeoutError:  # policy_guard: allow-silent-handler
        return ProbeOutcome.TIMEOUT, f"connect to {probe.host}:{probe.port} timed out"
    except ConnectionRefusedError:  # policy_guard: allow-silent-handler
        return ProbeOutcome.REFUSED, f"connection refused by {probe.host}:{probe.port}"
    except OSError as exc:  # policy_guard: allow-silent-handler
        return ProbeOutcome.ERROR, f"{type(exc).__name__}: {exc}"

    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
        logger.debug("Probe socket close failed for %s:%s: %s", probe.host, probe.port, exc)
    return ProbeOutcome.SUCCESS, ""
