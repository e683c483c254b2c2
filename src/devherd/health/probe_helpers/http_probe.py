"""HTTP-based health checking."""

import asyncio
import logging
from typing import Tuple

import aiohttp
from aiohttp import ClientConnectorError, ClientError, ClientTimeout

from ...registry.models import HttpProbe
from ..types import ProbeOutcome

logger = logging.getLogger(__name__)

_SUCCESS_RANGE = range(200, 300)


async def run_http_probe(probe: HttpProbe, timeout: float) -> Tuple[ProbeOutcome, str]:
    """
    GET the probe URL; any 2xx counts as healthy.

    Args:
        probe: HTTP probe definition
        timeout: Total time allowed for connect plus response

    Returns:
        Outcome and a diagnostic detail distinguishing refused, non-2xx and timeout
    """
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(probe.url, timeout=ClientTimeout(total=timeout), allow_redirects=False) as response:
                if response.status in _SUCCESS_RANGE:
                    return ProbeOutcome.SUCCESS, f"HTTP {response.status}"
                return ProbeOutcome.BAD_STATUS, f"HTTP {response.status}"
    except asyncio.TimeoutError:  # Transient network/connection failure  # policy_guard: allow-silent-handler
        return ProbeOutcome.TIMEOUT, f"GET {probe.url} timed out after {timeout:g}s"
    except ClientConnectorError as exc:  # policy_guard: allow-silent-handler
        if isinstance(exc.os_error, ConnectionRefusedError):
            return ProbeOutcome.REFUSED, f"connection refused by {probe.url}"
        return ProbeOutcome.ERROR, f"connect error: {exc.os_error}"
    except (  # policy_guard: allow-silent-handler
        ClientError,
        OSError,
        ValueError,
    ) as exc:
        return ProbeOutcome.ERROR, f"{type(exc).__name__}: {exc}"
