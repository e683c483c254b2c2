"""Helper modules for runtime configuration."""

from .dotenv_loader import DotenvLoader
from .interpolation import interpolate, interpolate_all

__all__ = [
    "DotenvLoader",
    "interpolate",
    "interpolate_all",
]
