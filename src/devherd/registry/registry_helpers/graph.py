"""Dependency graph algorithms over service names."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Set

_WHITE, _GREY, _BLACK = 0, 1, 2


def find_cycle(order: Sequence[str], dependencies: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """Return one cycle as ``[a, b, ..., a]`` or ``None`` when the graph is acyclic.

    Nodes are visited in declaration order so the reported cycle is stable.
    """
    color: Dict[str, int] = {name: _WHITE for name in order}
    parent: Dict[str, str] = {}

    for root in order:
        if color[root] != _WHITE:
            continue
        stack = [(root, iter(dependencies.get(root, ())))]
        color[root] = _GREY
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if color.get(child, _BLACK) == _WHITE:
                    parent[child] = node
                    color[child] = _GREY
                    stack.append((child, iter(dependencies.get(child, ()))))
                    advanced = True
                    break
                if color.get(child) == _GREY:
                    return _unwind(parent, node, child)
            if not advanced:
                color[node] = _BLACK
                stack.pop()
    return None


def _unwind(parent: Mapping[str, str], tail: str, head: str) -> List[str]:
    path = [tail]
    while path[-1] != head:
        path.append(parent[path[-1]])
    path.reverse()
    path.append(head)
    return path


def topological_layers(order: Sequence[str], dependencies: Mapping[str, Sequence[str]]) -> List[List[str]]:
    """Group names into layers; layer k holds names whose dependencies all sit in layers < k.

    Within a layer names keep declaration order. The graph must be acyclic.
    """
    depth: Dict[str, int] = {}

    def _depth(name: str, trail: Set[str]) -> int:
        if name in depth:
            return depth[name]
        if name in trail:
            raise ValueError(f"cycle through {name!r}")
        trail.add(name)
        deps = dependencies.get(name, ())
        value = 0 if not deps else 1 + max(_depth(dep, trail) for dep in deps)
        trail.discard(name)
        depth[name] = value
        return value

    for name in order:
        _depth(name, set())

    layers: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for name in order:
        layers[depth[name]].append(name)
    return layers


def transitive_dependents(name: str, dependencies: Mapping[str, Sequence[str]]) -> Set[str]:
    """Every service that depends on *name* directly or indirectly."""
    reverse: Dict[str, List[str]] = {}
    for node, deps in dependencies.items():
        for dep in deps:
            reverse.setdefault(dep, []).append(node)

    found: Set[str] = set()
    pending = list(reverse.get(name, ()))
    while pending:
        current = pending.pop()
        if current in found:
            continue
        found.add(current)
        pending.extend(reverse.get(current, ()))
    return found
