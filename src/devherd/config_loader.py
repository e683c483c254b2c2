"""
Stack definition loading.

A stack definition is a JSON document holding the service list plus optional
``env_file``/``environment``/``health``/``proxy``/``restart``/``shutdown``
sections. Loading is a single fail-fast pass: the result carries a validated
``Registry`` and fully resolved ``OrchestratorSettings``; nothing reads the raw
document afterwards.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from devherd.config import OrchestratorSettings
from devherd.errors import ValidationError
from devherd.registry import Registry, load
from devherd.registry.registry_helpers import load_env_files, parse_environment

logger = logging.getLogger(__name__)

DEFAULT_DEFINITION_FILE = "devherd.json"

_TOP_LEVEL_KEYS = frozenset({"services", "env_file", "environment", "health", "proxy", "restart", "shutdown", "runtime_dir"})


class BaseConfigLoader:
    """
    Base configuration loader providing standard JSON loading patterns.

    Example usage:
        loader = BaseConfigLoader(Path("stack"))
        config = loader.load_json_file("devherd.json")
    """

    def __init__(self, config_dir: Path):
        """
        Initialize config loader with a configuration directory.

        Args:
            config_dir: Path to the configuration directory
        """
        self.config_dir = config_dir

    def load_json_file(self, filename: str) -> Dict[str, Any]:
        """
        Load a JSON configuration file from the config directory.

        Args:
            filename: Name of the config file (e.g., 'devherd.json')

        Returns:
            Dictionary containing the configuration

        Raises:
            ValidationError: If the file is missing, unreadable, invalid JSON, or not an object
        """
        config_path = self.config_dir / filename

        if not config_path.exists():
            raise ValidationError(f"Stack definition not found: {config_path}", field="file")

        try:
            with open(config_path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except json.JSONDecodeError as exc:  # policy_guard: allow-silent-handler
            raise ValidationError(
                f"Invalid JSON in {config_path} at line {exc.lineno} column {exc.colno}: {exc.msg}", field="file"
            ) from exc
        except OSError as exc:  # policy_guard: allow-silent-handler
            raise ValidationError(f"Failed to read {config_path}: {exc}", field="file") from exc

        if not isinstance(payload, dict):
            raise ValidationError(f"{config_path} must contain an object at the top level", field="file")
        return payload

    def get_section(self, config: Mapping[str, Any], section_name: str) -> Dict[str, Any]:
        """
        Get an optional object section from a configuration dictionary.

        Raises:
            ValidationError: If the section is present but not an object
        """
        section = config.get(section_name)
        if section is None:
            return {}
        if not isinstance(section, dict):
            raise ValidationError.invalid_type(section_name, section, "an object")
        return section


@dataclass(frozen=True)
class StackDefinition:
    """Validated result of loading a stack definition."""

    path: Optional[Path]
    registry: Registry
    settings: OrchestratorSettings
    environment: Mapping[str, str]


def build_stack(
    payload: Mapping[str, Any],
    *,
    base_dir: Path,
    base_settings: Optional[OrchestratorSettings] = None,
    path: Optional[Path] = None,
) -> StackDefinition:
    """Validate an already-parsed definition document."""
    unknown = set(payload) - _TOP_LEVEL_KEYS
    if unknown:
        raise ValidationError.invalid_value("definition", sorted(unknown)[0], "Unknown top-level key")
    if "services" not in payload:
        raise ValidationError.missing_field("services")

    environment = load_env_files(payload.get("env_file"), base_dir, "env_file")
    environment.update(parse_environment(payload.get("environment"), {**os.environ, **environment}, "environment"))

    settings = (base_settings or OrchestratorSettings.from_env()).with_sections(payload)
    runtime_dir = payload.get("runtime_dir")
    if runtime_dir is not None:
        if not isinstance(runtime_dir, str) or not runtime_dir:
            raise ValidationError.invalid_type("runtime_dir", runtime_dir, "a non-empty string")
        resolved = Path(runtime_dir).expanduser()
        settings = settings.with_runtime_dir(resolved if resolved.is_absolute() else base_dir / resolved)

    registry = load(payload["services"], base_dir=base_dir, environment=environment)
    return StackDefinition(path=path, registry=registry, settings=settings, environment=environment)


def load_stack(path: Path | str = DEFAULT_DEFINITION_FILE, *, base_settings: Optional[OrchestratorSettings] = None) -> StackDefinition:
    """Load and validate a stack definition file."""
    definition_path = Path(path).expanduser().resolve()
    loader = BaseConfigLoader(definition_path.parent)
    payload = loader.load_json_file(definition_path.name)
    for section in ("health", "proxy", "restart", "shutdown"):
        loader.get_section(payload, section)
    stack = build_stack(payload, base_dir=definition_path.parent, base_settings=base_settings, path=definition_path)
    logger.info("Loaded stack definition %s (%d services)", definition_path, len(stack.registry))
    return stack


__all__ = ["BaseConfigLoader", "DEFAULT_DEFINITION_FILE", "StackDefinition", "build_stack", "load_stack"]
