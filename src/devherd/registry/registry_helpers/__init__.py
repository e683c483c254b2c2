"""Parsing and graph helpers for the service registry."""

from .graph import find_cycle, topological_layers, transitive_dependents
from .parser import load_env_files, parse_environment, parse_service, validate_name

__all__ = [
    "find_cycle",
    "load_env_files",
    "parse_environment",
    "parse_service",
    "topological_layers",
    "transitive_dependents",
    "validate_name",
]
