"""Exponential restart backoff, tracked per service."""

from __future__ import annotations

import logging
import random as _random
from dataclasses import dataclass
from typing import Dict, Final, Optional

from ...config import RestartSettings

logger = logging.getLogger(__name__)

_SECURE_RANDOM: Final = _random.SystemRandom()

MIN_RESTART_DELAY_SECONDS = 0.1


def uniform(a: float, b: float) -> float:
    """Delegate to SystemRandom.uniform so callers can monkeypatch in tests."""

    return _SECURE_RANDOM.uniform(a, b)


class DelayCalculator:
    """Calculates backoff delays with optional jitter."""

    @staticmethod
    def calculate_base_delay(config: RestartSettings, attempt: int) -> float:
        """
        Calculate base exponential backoff delay.

        Args:
            config: Restart backoff configuration
            attempt: Restart number, starting at 1

        Returns:
            Base delay in seconds
        """
        return min(config.initial_delay * (config.multiplier ** (attempt - 1)), config.max_delay)

    @staticmethod
    def apply_jitter(base_delay: float, jitter_range: float) -> float:
        if jitter_range <= 0:
            return base_delay
        jitter_amount = base_delay * jitter_range
        jitter = uniform(-jitter_amount, jitter_amount)
        return max(MIN_RESTART_DELAY_SECONDS, base_delay + jitter)

    @classmethod
    def calculate_full_delay(cls, config: RestartSettings, attempt: int, service_name: str) -> float:
        base_delay = cls.calculate_base_delay(config, attempt)
        final_delay = cls.apply_jitter(base_delay, config.jitter_range)
        logger.debug(
            "Calculated restart backoff for %s: attempt=%d, base_delay=%.2fs, final_delay=%.2fs",
            service_name,
            attempt,
            base_delay,
            final_delay,
        )
        return final_delay


@dataclass
class _BackoffState:
    restarts: int = 0


class RestartBackoff:
    """Counts consecutive restarts per service and hands out delays.

    The counter resets once an instance has stayed healthy for
    ``reset_after_seconds``, so a flapping service backs off but a service
    that crashes once a day restarts after ``initial_delay``.
    """

    def __init__(self, config: Optional[RestartSettings] = None) -> None:
        self.config = config or RestartSettings()
        self._states: Dict[str, _BackoffState] = {}

    def restarts(self, service_name: str) -> int:
        state = self._states.get(service_name)
        return state.restarts if state else 0

    def next_delay(self, service_name: str) -> float:
        """Register one more restart and return how long to wait before it."""
        state = self._states.setdefault(service_name, _BackoffState())
        state.restarts += 1
        return DelayCalculator.calculate_full_delay(self.config, state.restarts, service_name)

    def record_healthy_run(self, service_name: str, healthy_seconds: Optional[float]) -> None:
        """Reset the counter when the previous instance stayed healthy long enough."""
        if healthy_seconds is None or healthy_seconds < self.config.reset_after_seconds:
            return
        if self._states.pop(service_name, None) is not None:
            logger.debug("%s was healthy for %.1fs; restart backoff reset", service_name, healthy_seconds)

    def reset(self, service_name: str) -> None:
        self._states.pop(service_name, None)
