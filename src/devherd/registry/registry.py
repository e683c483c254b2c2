"""Read-only registry of validated service specs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import CyclicDependencyError, ValidationError
from .models import ServiceSpec
from .registry_helpers import (
    find_cycle,
    parse_service,
    topological_layers,
    transitive_dependents,
    validate_name,
)

logger = logging.getLogger(__name__)

Definitions = Union[Mapping[str, Any], Sequence[Any]]


class Registry:
    """Immutable, ordered collection of ``ServiceSpec`` values.

    Built once by :func:`load`; safe to share between tasks without locking.
    """

    __slots__ = ("_specs", "_order", "_dependencies")

    def __init__(self, specs: Sequence[ServiceSpec]) -> None:
        _validate(specs)
        self._specs: Dict[str, ServiceSpec] = {spec.name: spec for spec in specs}
        self._order: Tuple[str, ...] = tuple(spec.name for spec in specs)
        self._dependencies: Dict[str, Tuple[str, ...]] = {spec.name: spec.dependencies for spec in specs}

    def __iter__(self) -> Iterator[ServiceSpec]:
        return (self._specs[name] for name in self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __getitem__(self, name: str) -> ServiceSpec:
        return self._specs[name]

    def get(self, name: str) -> Optional[ServiceSpec]:
        return self._specs.get(name)

    @property
    def names(self) -> Tuple[str, ...]:
        """Service names in declaration order."""
        return self._order

    @property
    def dependencies(self) -> Mapping[str, Tuple[str, ...]]:
        return dict(self._dependencies)

    def dependents_of(self, name: str) -> set:
        """Services that depend on *name* directly or transitively."""
        return transitive_dependents(name, self._dependencies)

    def launch_waves(self) -> List[List[str]]:
        """Topological layering, ties broken by declaration order."""
        return topological_layers(self._order, self._dependencies)

    def routed(self) -> List[ServiceSpec]:
        return [spec for spec in self if spec.prefixes]


def _validate(specs: Sequence[ServiceSpec]) -> None:
    names: Dict[str, None] = {}
    for spec in specs:
        validate_name(spec.name)
        if spec.name in names:
            raise ValidationError.duplicate("service name", spec.name)
        names[spec.name] = None

    prefixes: Dict[str, str] = {}
    for spec in specs:
        for dependency in spec.dependencies:
            if dependency not in names:
                raise ValidationError.unknown_dependency(spec.name, dependency)
        for prefix in spec.prefixes:
            owner = prefixes.get(prefix)
            if owner is not None:
                raise ValidationError(
                    f"Route prefix {prefix!r} is claimed by both {owner!r} and {spec.name!r}",
                    field=f"services.{spec.name}.route_prefix",
                )
            prefixes[prefix] = spec.name

    cycle = find_cycle(list(names), {spec.name: spec.dependencies for spec in specs})
    if cycle:
        raise CyclicDependencyError(cycle)


def load(
    definitions: Definitions,
    *,
    base_dir: Optional[Path] = None,
    environment: Optional[Mapping[str, str]] = None,
) -> Registry:
    """Validate raw service definitions and return a ``Registry``.

    Args:
        definitions: A list of service objects carrying ``name``, a mapping of
            name to service object, or already-built ``ServiceSpec`` values.
        base_dir: Directory relative paths (env files, working dirs) resolve against.
        environment: Key/value set shared by every service.

    Raises:
        ValidationError: A field is malformed, a name or prefix repeats, or a
            dependency does not resolve.
        CyclicDependencyError: The dependency graph is not a DAG.
    """
    base = Path(base_dir) if base_dir is not None else Path.cwd()
    shared = dict(environment or {})
    specs: List[ServiceSpec] = []

    if isinstance(definitions, Mapping):
        items = list(definitions.items())
    elif isinstance(definitions, Sequence) and not isinstance(definitions, (str, bytes)):
        items = []
        for index, raw in enumerate(definitions):
            if isinstance(raw, ServiceSpec):
                items.append((raw.name, raw))
                continue
            if not isinstance(raw, Mapping):
                raise ValidationError.invalid_type(f"services[{index}]", raw, "an object")
            items.append((validate_name(raw.get("name"), f"services[{index}].name"), raw))
    else:
        raise ValidationError.invalid_type("services", definitions, "a list or an object")

    if not items:
        raise ValidationError.missing_field("services", "at least one service is required")

    for name, raw in items:
        if isinstance(raw, ServiceSpec):
            specs.append(raw)
            continue
        validate_name(name, f"services.{name}")
        if isinstance(raw, Mapping) and raw.get("name", name) != name:
            raise ValidationError.invalid_value(f"services.{name}.name", raw.get("name"), "Does not match its key")
        specs.append(parse_service(raw, name, base_dir=base, shared_environment=shared))

    registry = Registry(specs)
    logger.debug("Loaded %d service definitions: %s", len(registry), ", ".join(registry.names))
    return registry
