"""Launch plan: the registry's topological layering as an ordered sequence of waves."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..registry import Registry


@dataclass(frozen=True)
class LaunchPlan:
    """Ordered launch waves; members of one wave start concurrently."""

    waves: Tuple[Tuple[str, ...], ...]

    @classmethod
    def from_registry(cls, registry: Registry) -> "LaunchPlan":
        return cls(tuple(tuple(wave) for wave in registry.launch_waves()))

    def __len__(self) -> int:
        return len(self.waves)

    def __iter__(self):
        return iter(self.waves)

    def wave_of(self) -> Dict[str, int]:
        return {name: index for index, wave in enumerate(self.waves) for name in wave}

    def startup_order(self) -> List[str]:
        return [name for wave in self.waves for name in wave]

    def shutdown_waves(self) -> List[Tuple[str, ...]]:
        """Waves in reverse, so dependents always stop before their dependencies."""
        return list(reversed(self.waves))

    def describe(self, registry: Registry) -> List[str]:
        """Human-readable lines for the ``plan`` command."""
        lines = []
        for index, wave in enumerate(self.waves, start=1):
            lines.append(f"wave {index}:")
            for name in wave:
                spec = registry[name]
                deps = f" (after {', '.join(spec.dependencies)})" if spec.dependencies else ""
                probe = spec.health_probe.describe() if spec.health_probe is not None else "no healthcheck"
                route = f" route {spec.route_prefix}" if spec.route_prefix else ""
                lines.append(f"  {name}{deps}: {probe}{route}")
        return lines
