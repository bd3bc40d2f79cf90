"""Dependency ordering for the services of a stack.

Services (and the migration job) form a directed graph through their
`depends_on` lists. The start plan is a list of waves: every node appears in a
later wave than all of its dependencies, and nodes in the same wave can be
started concurrently.
"""
from __future__ import annotations

from typing import Iterable, Mapping, Protocol, Sequence

from .errors import CyclicDependencyError, InvalidDescriptorError
from .runtime import ServiceStatus


class Node(Protocol):
    name: str
    depends_on: Sequence[str]


def _graph(nodes: Iterable[Node]) -> dict[str, list[str]]:
    graph: dict[str, list[str]] = {}
    for n in nodes:
        if n.name in graph:
            raise InvalidDescriptorError(f"duplicate service name '{n.name}'")
        graph[n.name] = list(n.depends_on)
    for name, deps in graph.items():
        for dep in deps:
            if dep not in graph:
                raise InvalidDescriptorError(f"service '{name}' depends on unknown service '{dep}'")
    return graph


def find_cycle(nodes: Iterable[Node]) -> list[str] | None:
    """Return one dependency cycle as [a, b, ..., a], or None if the graph is a DAG.

    Depth-first search with three-color marking: reaching a node that is still
    on the current path (GRAY) closes a cycle.
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    graph = _graph(nodes)
    color = {name: WHITE for name in graph}
    path: list[str] = []

    def dfs(node: str) -> list[str] | None:
        color[node] = GRAY
        path.append(node)
        for dep in graph[node]:
            if color[dep] == GRAY:
                return path[path.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = dfs(dep)
                if found:
                    return found
        color[node] = BLACK
        path.pop()
        return None

    for name in sorted(graph):
        if color[name] == WHITE:
            found = dfs(name)
            if found:
                return found
    return None


def plan_start_order(nodes: Iterable[Node]) -> list[list[str]]:
    """Group nodes into start waves (Kahn's algorithm, level by level).

    Raises CyclicDependencyError naming the cycle's members.
    """
    nodes = list(nodes)
    cycle = find_cycle(nodes)
    if cycle:
        raise CyclicDependencyError(cycle)

    graph = _graph(nodes)
    dependents: dict[str, list[str]] = {name: [] for name in graph}
    in_degree = {name: len(set(deps)) for name, deps in graph.items()}
    for name, deps in graph.items():
        for dep in set(deps):
            dependents[dep].append(name)

    waves: list[list[str]] = []
    current = sorted(name for name, d in in_degree.items() if d == 0)
    while current:
        waves.append(current)
        nxt: list[str] = []
        for name in current:
            for child in dependents[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    nxt.append(child)
        current = sorted(nxt)
    return waves


def flatten(waves: Sequence[Sequence[str]]) -> list[str]:
    return [name for wave in waves for name in wave]


def ready_to_start(
    node: Node,
    statuses: Mapping[str, ServiceStatus],
    completed: Iterable[str] = (),
) -> bool:
    """True when every dependency is Healthy (services) or completed (one-shot jobs)."""
    done = set(completed)
    for dep in node.depends_on:
        if dep in done:
            continue
        if statuses.get(dep) != ServiceStatus.HEALTHY:
            return False
    return True


def blocked_by(node: Node, statuses: Mapping[str, ServiceStatus], completed: Iterable[str] = ()) -> list[str]:
    done = set(completed)
    return [d for d in node.depends_on if d not in done and statuses.get(d) != ServiceStatus.HEALTHY]
