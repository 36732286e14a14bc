"""Dependency graph resolution for background tasks"""

from typing import Dict, List, Mapping, Sequence

from .status_store import TaskName


def resolve_execution_order(graph: Mapping[TaskName, Sequence[TaskName]]) -> List[List[TaskName]]:
    """
    Group tasks into levels; every task's dependencies sit in earlier levels.

    Raises ValueError for dependencies missing from the graph and for cycles.
    """
    for name, dependencies in graph.items():
        unknown = [dep for dep in dependencies if dep not in graph]
        if unknown:
            raise ValueError(f"{name.value} depends on unknown task(s): {', '.join(d.value for d in unknown)}")

    remaining: Dict[TaskName, set] = {name: set(deps) for name, deps in graph.items()}
    levels: List[List[TaskName]] = []

    while remaining:
        ready = [name for name, deps in remaining.items() if not deps]
        if not ready:
            raise ValueError(f"Dependency cycle among: {', '.join(n.value for n in remaining)}")
        levels.append(ready)
        for name in ready:
            del remaining[name]
        for deps in remaining.values():
            deps.difference_update(ready)

    return levels
