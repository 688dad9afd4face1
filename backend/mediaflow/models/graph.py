"""
Graph models: the editor's nodes, edges and groups as the engine sees them.

These are plain data. The surrounding store owns them; the engine only reads
snapshots and mutates node data through the store's update primitive.
Field aliases match the camelCase keys the editor sends over the wire.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


NodeStatus = Literal["idle", "loading", "complete", "error"]
ChannelType = Literal["image", "text", "video", "audio", "3d"]


class EdgeData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    has_pause: bool = Field(False, alias="hasPause")
    array_item_index: int | None = Field(None, alias="arrayItemIndex")


class Edge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str
    target: str
    source_handle: str | None = Field(None, alias="sourceHandle")
    target_handle: str | None = Field(None, alias="targetHandle")
    data: EdgeData | None = None

    @property
    def has_pause(self) -> bool:
        return bool(self.data and self.data.has_pause)


class Node(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    group_id: str | None = Field(None, alias="groupId")

    @property
    def status(self) -> NodeStatus:
        return self.data.get("status") or "idle"


class Group(BaseModel):
    id: str
    name: str = ""
    locked: bool = False


class InputSlot(BaseModel):
    """One named, typed input slot declared by a model's input schema."""

    name: str
    type: str
    required: bool = False
    label: str | None = None


class GraphSnapshot(BaseModel):
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    groups: dict[str, Group] = Field(default_factory=dict)

    def node_map(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]
