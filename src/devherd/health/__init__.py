"""Health probing for supervised services."""

from .checker import HealthChecker
from .types import HealthVerdict, ProbeOutcome, ProbeResult

__all__ = ["HealthChecker", "HealthVerdict", "ProbeOutcome", "ProbeResult"]
