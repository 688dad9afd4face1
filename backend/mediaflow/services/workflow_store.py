"""
Workflow store: the engine's view of the surrounding editor state.

The engine only needs three things from the store: a synchronous snapshot of
the graph, a fresh read of one node, and the single mutation primitive
`update_node_data`. InMemoryWorkflowStore backs the HTTP service and tests.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from mediaflow.models.graph import Edge, GraphSnapshot, Group, Node
from mediaflow.models.node_registry import get_node_spec

logger = logging.getLogger(__name__)


class WorkflowStore:
    def snapshot(self) -> GraphSnapshot:
        raise NotImplementedError

    def get_node(self, node_id: str) -> Node | None:
        raise NotImplementedError

    def update_node_data(self, node_id: str, partial: dict[str, Any]) -> None:
        raise NotImplementedError


class InMemoryWorkflowStore(WorkflowStore):
    """Holds one workflow graph in memory."""

    def __init__(
        self,
        nodes: list[Node] | None = None,
        edges: list[Edge] | None = None,
        groups: dict[str, Group] | None = None,
    ):
        self._nodes: dict[str, Node] = {}
        self._edges: list[Edge] = []
        self._groups: dict[str, Group] = {}
        self.load(GraphSnapshot(nodes=nodes or [], edges=edges or [], groups=groups or {}))

    def load(self, snapshot: GraphSnapshot) -> None:
        """Replace the whole graph. Missing per-type defaults are filled in."""
        seen_edges: set[str] = set()
        for edge in snapshot.edges:
            if edge.id in seen_edges:
                raise ValueError(f"Duplicate edge ID '{edge.id}'")
            seen_edges.add(edge.id)

        nodes: dict[str, Node] = {}
        for node in snapshot.nodes:
            if node.id in nodes:
                raise ValueError(f"Duplicate node ID '{node.id}'")
            spec = get_node_spec(node.type)
            data = copy.deepcopy(spec.default_data) if spec else {}
            data.setdefault("status", "idle")
            data.setdefault("error", None)
            data.update(copy.deepcopy(node.data))
            nodes[node.id] = node.model_copy(update={"data": data})

        self._nodes = nodes
        self._edges = [e.model_copy(deep=True) for e in snapshot.edges]
        self._groups = {gid: g.model_copy() for gid, g in snapshot.groups.items()}
        logger.info(
            "Loaded workflow graph: %d nodes, %d edges, %d groups",
            len(self._nodes),
            len(self._edges),
            len(self._groups),
        )

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(
            nodes=[n.model_copy(deep=True) for n in self._nodes.values()],
            edges=[e.model_copy(deep=True) for e in self._edges],
            groups={gid: g.model_copy() for gid, g in self._groups.items()},
        )

    def get_node(self, node_id: str) -> Node | None:
        node = self._nodes.get(node_id)
        return node.model_copy(deep=True) if node else None

    def update_node_data(self, node_id: str, partial: dict[str, Any]) -> None:
        node = self._nodes.get(node_id)
        if node is None:
            logger.warning("update_node_data for unknown node %s ignored", node_id)
            return
        node.data.update(copy.deepcopy(partial))
