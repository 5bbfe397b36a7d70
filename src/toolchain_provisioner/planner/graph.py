"""
Resource dependency graph.

This module turns a set of resource keys into a networkx DiGraph that the
planner uses to order operations.

Edges come from two places:
1. The fixed kind order network -> firewall_rule -> instance. Every resource
   of one kind precedes every resource of the next present kind.
2. Explicit depends_on names on desired resources.

An edge a -> b means a must exist before b is created, and b must be gone
before a is deleted.

Ordering is expressed as generations: lists of resources with no dependency
between them. Creates walk the generations forward, deletes walk them
backward. Within a generation members are sorted by kind rank then name so
plans are deterministic.
"""

from __future__ import annotations

from typing import Iterable, List, Mapping, Sequence

import networkx as nx

from toolchain_provisioner.core.errors import PlanConflict
from toolchain_provisioner.core.types import ResourceKey, ResourceKind

KIND_ORDER = (ResourceKind.network, ResourceKind.firewall_rule, ResourceKind.instance)
_KIND_RANK = {kind: rank for rank, kind in enumerate(KIND_ORDER)}


def sort_key(key: ResourceKey) -> tuple[int, str]:
    return (_KIND_RANK[key[0]], key[1])


def build_dependency_graph(
    keys: Iterable[ResourceKey],
    depends_on: Mapping[ResourceKey, Sequence[str]] | None = None,
) -> nx.DiGraph:
    """
    Build the dependency graph for a set of resources.

    depends_on maps a resource key to the names it depends on. Names that do
    not match any key in the graph are ignored: they refer to resources this
    plan does not manage.
    """

    nodes = sorted(set(keys), key=sort_key)
    graph = nx.DiGraph()
    graph.add_nodes_from(nodes)

    previous: list[ResourceKey] = []
    for kind in KIND_ORDER:
        level = [n for n in nodes if n[0] == kind]
        if not level:
            continue
        for before in previous:
            for after in level:
                graph.add_edge(before, after, reason="kind")
        previous = level

    by_name: dict[str, list[ResourceKey]] = {}
    for node in nodes:
        by_name.setdefault(node[1], []).append(node)

    for key, names in (depends_on or {}).items():
        if key not in graph:
            continue
        for name in names:
            for dep in by_name.get(name, []):
                if dep != key:
                    graph.add_edge(dep, key, reason="depends_on")

    return graph


def dependency_generations(graph: nx.DiGraph) -> List[List[ResourceKey]]:
    """
    Return the topological generations of the graph, members sorted.

    A cycle means the desired state cannot be built in any order, which is a
    planning conflict rather than a provider failure.
    """
    try:
        generations = list(nx.topological_generations(graph))
    except nx.NetworkXUnfeasible as e:
        cycle = " -> ".join(f"{k}/{n}" for (k, n), _ in nx.find_cycle(graph))
        raise PlanConflict(
            f"dependency cycle: {cycle}",
            subject="dependency graph",
            remediation="remove one of the depends_on entries that form the cycle",
        ) from e

    return [sorted(gen, key=sort_key) for gen in generations]


def select_waves(
    generations: List[List[ResourceKey]],
    members: set[ResourceKey],
    reverse: bool = False,
) -> List[List[ResourceKey]]:
    """
    Keep only members from each generation and drop empty generations.

    Filtering full graph generations, rather than building a graph of only the
    members, keeps transitive ordering through resources that need no
    operation.
    """
    ordered = reversed(generations) if reverse else generations
    waves: List[List[ResourceKey]] = []
    for gen in ordered:
        wave = [k for k in gen if k in members]
        if wave:
            waves.append(wave)
    return waves
