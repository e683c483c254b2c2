"""Probe implementations, one per probe kind."""

from .exec_probe import run_exec_probe
from .http_probe import run_http_probe
from .redis_probe import run_redis_probe
from .tcp_probe import run_tcp_probe

__all__ = ["run_exec_probe", "run_http_probe", "run_redis_probe", "run_tcp_probe"]
