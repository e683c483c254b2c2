from __future__ import annotations

"""Exception types for configuration handling."""

from ..errors import ValidationError


class ConfigurationError(ValidationError):
    """Raised when an environment-backed setting is missing or malformed."""


__all__ = ["ConfigurationError"]
