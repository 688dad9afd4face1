"""
Level planner: partitions a workflow graph into dependency levels.

Level 0 holds every node without incoming edges. Level N holds the nodes whose
last unsatisfied dependency sat in level N-1 (Kahn's algorithm, breadth-first).
Nodes on a cycle never reach in-degree 0 and therefore appear in no level;
`plan_execution` turns that into an explicit CycleError.
"""

from __future__ import annotations

import logging

from mediaflow.models.graph import Edge, Node
from mediaflow.services.errors import CycleError

logger = logging.getLogger(__name__)


def build_dependency_graph(
    nodes: list[Node],
    edges: list[Edge],
) -> tuple[dict[str, int], dict[str, list[str]]]:
    """
    Build dependency tracking structures from the graph's edges.

    Returns:
        in_degree: count of distinct upstream nodes for each node
        adjacency: node -> list of downstream nodes to unblock
    """
    in_degree: dict[str, int] = {n.id: 0 for n in nodes}
    adjacency: dict[str, list[str]] = {n.id: [] for n in nodes}
    upstream: dict[str, set[str]] = {n.id: set() for n in nodes}

    for edge in edges:
        if edge.source not in in_degree or edge.target not in in_degree:
            logger.debug("Ignoring edge %s with unknown endpoint", edge.id)
            continue

        # Multiple edges between the same pair count as one dependency
        if edge.source not in upstream[edge.target]:
            upstream[edge.target].add(edge.source)
            in_degree[edge.target] += 1
            adjacency[edge.source].append(edge.target)

    return in_degree, adjacency


def plan_levels(nodes: list[Node], edges: list[Edge]) -> list[list[str]]:
    """
    Group node ids by dependency level.

    Level 0 keeps node declaration order. Later levels list nodes in the order
    their last dependency completes, walking the previous level front to back.
    """
    in_degree, adjacency = build_dependency_graph(nodes, edges)

    levels: list[list[str]] = []
    current = [n.id for n in nodes if in_degree[n.id] == 0]

    while current:
        levels.append(current)
        next_level: list[str] = []
        for node_id in current:
            for child in adjacency[node_id]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    next_level.append(child)
        current = next_level

    return levels


def find_unplanned_nodes(nodes: list[Node], levels: list[list[str]]) -> list[str]:
    planned = {node_id for level in levels for node_id in level}
    return [n.id for n in nodes if n.id not in planned]


def plan_execution(nodes: list[Node], edges: list[Edge]) -> list[list[str]]:
    """Plan levels and fail with CycleError if any node could not be placed."""
    levels = plan_levels(nodes, edges)
    unplanned = find_unplanned_nodes(nodes, levels)
    if unplanned:
        raise CycleError(unplanned)
    logger.debug(
        "Planned %d nodes into %d levels", sum(len(l) for l in levels), len(levels)
    )
    return levels


def find_level_index(levels: list[list[str]], node_id: str) -> int | None:
    return next((i for i, level in enumerate(levels) if node_id in level), None)


def chunk(items: list, size: int) -> list[list]:
    """Split `items` into consecutive batches of at most `size`."""
    if size < 1:
        raise ValueError("Batch size must be at least 1")
    return [items[i:i + size] for i in range(0, len(items), size)]
