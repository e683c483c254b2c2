"""Redis PING probing."""

import asyncio
import logging
from typing import Tuple

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ...registry.models import RedisProbe
from ..types import ProbeOutcome

logger = logging.getLogger(__name__)


async def run_redis_probe(probe: RedisProbe, timeout: float) -> Tuple[ProbeOutcome, str]:
    """Send PING; a truthy reply is healthy."""
    client = Redis(
        host=probe.host,
        port=probe.port,
        password=probe.password,
        socket_connect_timeout=timeout,
        socket_timeout=timeout,
    )
    try:
        reply = await asyncio.wait_for(client.ping(), timeout=timeout)
    except (asyncio.TimeoutError, RedisTimeoutError):  # policy_guard: allow-silent-handler
        return ProbeOutcome.TIMEOUT, f"PING {probe.host}:{probe.port} timed out"
    except RedisConnectionError as exc:  # policy_guard: allow-silent-handler
        if "refused" in str(exc).lower():
            return ProbeOutcome.REFUSED, f"connection refused by {probe.host}:{probe.port}"
        return ProbeOutcome.ERROR, f"connect error: {exc}"
    except (RedisError, OSError) as exc:  # policy_guard: allow-silent-handler
        return ProbeOutcome.ERROR, f"{type(exc).__name__}: {exc}"
    finally:
        try:
            await client.aclose()
        except (RedisError, OSError) as exc:  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
            logger.debug("Redis probe client close failed: %s", exc)

    if reply:
        return ProbeOutcome.SUCCESS, "PONG"
    return ProbeOutcome.BAD_STATUS, f"unexpected PING reply {reply!r}"
