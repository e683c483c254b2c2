"""Type definitions for health probing."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ProbeOutcome(Enum):
    """Why a single probe attempt succeeded or failed."""

    SUCCESS = "success"
    REFUSED = "refused"
    BAD_STATUS = "bad_status"
    NONZERO_EXIT = "nonzero_exit"
    TIMEOUT = "timeout"
    ERROR = "error"


class HealthVerdict(Enum):
    """Result of one readiness/liveness poll against an instance."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    PENDING = "pending"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe attempt"""

    service_name: str
    outcome: ProbeOutcome
    detail: str = ""
    response_time_ms: Optional[float] = None
    checked_at: float = field(default_factory=time.time)

    @property
    def healthy(self) -> bool:
        return self.outcome is ProbeOutcome.SUCCESS

    def describe(self) -> str:
        if self.detail:
            return f"{self.outcome.value}: {self.detail}"
        return self.outcome.value
