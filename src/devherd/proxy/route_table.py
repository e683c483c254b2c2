"""Immutable prefix routing table and the holder that swaps it atomically."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AbstractSet, Any, Dict, Iterable, Optional, Tuple

from ..registry import Registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteEntry:
    prefix: str
    service_name: str
    host: str
    port: int
    upgrade: bool = False
    active: bool = False

    def matches(self, path: str) -> bool:
        if self.prefix == "/" or path == self.prefix:
            return True
        if self.prefix.endswith("/"):
            return path.startswith(self.prefix)
        return path.startswith(self.prefix + "/")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prefix": self.prefix,
            "service": self.service_name,
            "upstream": f"{self.host}:{self.port}",
            "upgrade": self.upgrade,
            "active": self.active,
        }


@dataclass(frozen=True)
class RouteTable:
    """Routes ordered longest prefix first; never mutated after construction."""

    entries: Tuple[RouteEntry, ...] = ()
    version: int = 0

    @classmethod
    def of(cls, entries: Iterable[RouteEntry], version: int = 0) -> "RouteTable":
        ordered = sorted(entries, key=lambda entry: (-len(entry.prefix), entry.prefix))
        return cls(tuple(ordered), version)

    @classmethod
    def build(cls, registry: Registry, healthy: AbstractSet[str], version: int = 0) -> "RouteTable":
        """Routes for every routed service, active only while the service is Healthy."""
        entries = []
        for spec in registry.routed():
            active = spec.name in healthy
            if spec.route_prefix:
                entries.append(RouteEntry(spec.route_prefix, spec.name, spec.upstream.host, spec.upstream.port, False, active))
            if spec.upgrade_prefix:
                entries.append(RouteEntry(spec.upgrade_prefix, spec.name, spec.upstream.host, spec.upstream.port, True, active))
        return cls.of(entries, version)

    def match(self, path: str) -> Optional[RouteEntry]:
        for entry in self.entries:
            if entry.matches(path):
                return entry
        return None

    def active_services(self) -> Tuple[str, ...]:
        return tuple(sorted({entry.service_name for entry in self.entries if entry.active}))

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "routes": [entry.to_dict() for entry in self.entries]}


class RouteTableHolder:
    """Publishes RouteTable snapshots.

    Readers take ``current`` once per request and route with that snapshot
    only; ``publish`` replaces the reference in a single assignment.
    """

    def __init__(self, table: Optional[RouteTable] = None) -> None:
        self._table = table or RouteTable()

    @property
    def current(self) -> RouteTable:
        return self._table

    def publish(self, table: RouteTable) -> RouteTable:
        previous = self._table
        if table.version <= previous.version:
            table = RouteTable(table.entries, previous.version + 1)
        self._table = table
        if previous.active_services() != table.active_services():
            logger.info("Routes now active for: %s", ", ".join(table.active_services()) or "(none)")
        return table

    def publish_from(self, registry: Registry, healthy: AbstractSet[str]) -> RouteTable:
        return self.publish(RouteTable.build(registry, healthy))
