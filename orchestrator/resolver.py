"""
Orchestrator - Dependency Resolver.

============================================================
RESPONSIBILITY
============================================================
Computes a safe initialization order from declared
dependencies.

- Topological sort (Kahn's algorithm)
- Ties broken by ascending name for reproducible plans
- Cycle detection reporting EVERY module on a cycle
- Atomic failure: no partial order is ever returned

Pure functions. Safe to call speculatively before committing a
registration.

============================================================
"""

import heapq
import logging
from typing import Dict, FrozenSet, List, Mapping, Set, Tuple, Union, Iterable

from core.exceptions import CyclicDependency

from .models import ModuleDescriptor, ModuleRecord


logger = logging.getLogger(__name__)

Nodes = Union[
    Mapping[str, Iterable[str]],
    Iterable[ModuleDescriptor],
    Iterable[ModuleRecord],
]


# ============================================================
# GRAPH NORMALIZATION
# ============================================================

def _as_graph(nodes: Nodes) -> Dict[str, Tuple[str, ...]]:
    """Normalize input to ``{name: dependencies}``."""
    if isinstance(nodes, Mapping):
        return {name: tuple(deps) for name, deps in nodes.items()}

    graph = {}
    for node in nodes:
        descriptor = node.descriptor if isinstance(node, ModuleRecord) else node
        graph[descriptor.name] = tuple(descriptor.dependencies)
    return graph


def _present_edges(graph: Mapping[str, Tuple[str, ...]]) -> Dict[str, Set[str]]:
    """Dependencies restricted to names present in the graph."""
    return {
        name: {dep for dep in deps if dep in graph}
        for name, deps in graph.items()
    }


# ============================================================
# CYCLE DETECTION
# ============================================================

def _strongly_connected(edges: Mapping[str, Set[str]]) -> List[List[str]]:
    """Tarjan's algorithm, iterative to avoid recursion limits."""
    index_of: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for root in sorted(edges):
        if root in index_of:
            continue

        work = [(root, iter(sorted(edges[root])))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(edges[child]))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)

    return components


def find_cycle_members(nodes: Nodes) -> FrozenSet[str]:
    """
    Every module that sits on a dependency cycle.

    Returns:
        Union of all strongly connected components of size > 1 and all
        self loops; empty when the graph is acyclic
    """
    edges = _present_edges(_as_graph(nodes))
    members: Set[str] = set()
    for component in _strongly_connected(edges):
        if len(component) > 1:
            members.update(component)
        elif component[0] in edges[component[0]]:
            members.add(component[0])
    return frozenset(members)


# ============================================================
# ORDERING
# ============================================================

def resolve(nodes: Nodes) -> List[str]:
    """
    Initialization order: every module after all its dependencies.

    Dependencies that are not among ``nodes`` are ignored for ordering.

    Raises:
        CyclicDependency: If the graph has a cycle; lists every member
    """
    edges = _present_edges(_as_graph(nodes))

    in_degree = {name: len(deps) for name, deps in edges.items()}
    dependents: Dict[str, List[str]] = {name: [] for name in edges}
    for name, deps in edges.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [name for name, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(edges):
        members = find_cycle_members(edges)
        logger.debug(f"Resolution failed, cycle members: {sorted(members)}")
        raise CyclicDependency(members)

    return order


def shutdown_order(nodes: Nodes) -> List[str]:
    """Shutdown order (reverse of initialization)."""
    return list(reversed(resolve(nodes)))


def dependents_of(nodes: Nodes, name: str) -> Set[str]:
    """Every module that depends on ``name``, directly or transitively."""
    edges = _present_edges(_as_graph(nodes))
    reverse: Dict[str, Set[str]] = {n: set() for n in edges}
    for node, deps in edges.items():
        for dep in deps:
            reverse[dep].add(node)

    found: Set[str] = set()
    frontier = list(reverse.get(name, ()))
    while frontier:
        node = frontier.pop()
        if node in found:
            continue
        found.add(node)
        frontier.extend(reverse[node])
    found.discard(name)
    return found


__all__ = [
    "resolve",
    "shutdown_order",
    "find_cycle_members",
    "dependents_of",
]
