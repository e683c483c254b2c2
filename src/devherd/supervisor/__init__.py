"""Process supervision: spawn, stop and restart service processes."""

from .process_supervisor import ExitCallback, ProcessSupervisor
from .supervisor_helpers import RestartBackoff

__all__ = ["ExitCallback", "ProcessSupervisor", "RestartBackoff"]
