"""
Input resolution: gathers a node's typed inputs from its incoming edges.

Every edge into the target is resolved against the current value of its
source node. Values then land in typed channels:

- images, videos, audio: appended in edge order
- text, model3d: last write wins
- dynamic_inputs: remapped to the names of the target's input schema, where
  one value stays a scalar and a second value promotes it to a list

The `easeCurve` handle is a side channel carrying curve parameters from an
EaseCurve node; it never feeds the typed channels.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from mediaflow.models.graph import ChannelType, Edge, GraphSnapshot, InputSlot, Node
from mediaflow.models.node_registry import get_node_spec

logger = logging.getLogger(__name__)

EASE_CURVE_HANDLE = "easeCurve"


class EaseCurveInput(BaseModel):
    bezier_handles: list[float]
    easing_preset: str | None = None


class ConnectedInputs(BaseModel):
    images: list[str] = Field(default_factory=list)
    text: str | None = None
    videos: list[str] = Field(default_factory=list)
    audio: list[str] = Field(default_factory=list)
    model3d: str | None = None
    dynamic_inputs: dict[str, str | list[str]] = Field(default_factory=dict)
    ease_curve: EaseCurveInput | None = None


# ---------------------------------------------------------------------------
# Handle classification
# ---------------------------------------------------------------------------


def is_image_handle(handle_id: str | None) -> bool:
    if not handle_id:
        return False
    return handle_id == "image" or handle_id.startswith("image-") or "frame" in handle_id


def is_text_handle(handle_id: str | None) -> bool:
    if not handle_id:
        return False
    return handle_id == "text" or handle_id.startswith("text-") or "prompt" in handle_id


# ---------------------------------------------------------------------------
# Source outputs
# ---------------------------------------------------------------------------


def _array_item(items: Any, index: int) -> str | None:
    if isinstance(items, list) and 0 <= index < len(items):
        return items[index]
    return None


def get_source_output(
    source: Node,
    source_handle: str | None = None,
    edge: Edge | None = None,
) -> tuple[ChannelType, Any]:
    """Return the (channel type, value) a source node currently exposes."""
    data = source.data

    if source.type == "Array":
        items = data.get("output_items") or []
        item_index = edge.data.array_item_index if edge and edge.data else None
        if isinstance(item_index, int) and item_index >= 0:
            return "text", _array_item(items, item_index)
        if source_handle and source_handle.startswith("text-"):
            suffix = source_handle[len("text-"):]
            if suffix.isdigit():
                return "text", _array_item(items, int(suffix))
        return "text", data.get("output_text")

    if source.type == "PromptConstructor":
        output_text = data.get("output_text")
        return "text", output_text if output_text is not None else data.get("template")

    spec = get_node_spec(source.type)
    if spec is None or spec.output is None:
        return "image", None
    return spec.output.channel, data.get(spec.output.key)


# ---------------------------------------------------------------------------
# Input schema mapping
# ---------------------------------------------------------------------------


def _parse_input_schema(node: Node | None) -> list[InputSlot]:
    if node is None:
        return []
    raw = node.data.get("input_schema") or []
    slots: list[InputSlot] = []
    for item in raw:
        if isinstance(item, InputSlot):
            slots.append(item)
        elif isinstance(item, dict):
            slots.append(InputSlot.model_validate(item))
    return slots


def build_handle_schema_map(slots: list[InputSlot]) -> dict[str, str]:
    """
    Map handle ids to schema names.

    Slots are numbered per type in declaration order (`image-0`, `image-1`,
    `text-0`, ...). The first slot of each type also owns the bare legacy
    handle (`image`, `text`) so edges saved before indexed handles still map.
    """
    handle_to_name: dict[str, str] = {}
    counters: dict[str, int] = {}
    for slot in slots:
        index = counters.get(slot.type, 0)
        counters[slot.type] = index + 1
        handle_to_name[f"{slot.type}-{index}"] = slot.name
        if index == 0:
            handle_to_name[slot.type] = slot.name
    return handle_to_name


def _accumulate_dynamic(dynamic_inputs: dict[str, Any], name: str, value: str) -> None:
    existing = dynamic_inputs.get(name)
    if existing is None:
        dynamic_inputs[name] = value
    elif isinstance(existing, list):
        existing.append(value)
    else:
        dynamic_inputs[name] = [existing, value]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _resolve_ease_curve(node_id: str, snapshot: GraphSnapshot) -> EaseCurveInput | None:
    curve_edges = [
        e for e in snapshot.edges
        if e.target == node_id and e.target_handle == EASE_CURVE_HANDLE
    ]
    if not curve_edges:
        return None
    if len(curve_edges) > 1:
        logger.warning(
            "Node %s has %d ease curve sources; using the first", node_id, len(curve_edges)
        )

    source = snapshot.get_node(curve_edges[0].source)
    if source is None or source.type != "EaseCurve":
        return None
    handles = source.data.get("bezier_handles")
    if not handles:
        return None
    return EaseCurveInput(
        bezier_handles=list(handles),
        easing_preset=source.data.get("easing_preset"),
    )


def resolve_connected_inputs(node_id: str, snapshot: GraphSnapshot) -> ConnectedInputs:
    """Resolve all typed inputs for `node_id` from the current graph state."""
    node_map = snapshot.node_map()
    handle_to_name = build_handle_schema_map(_parse_input_schema(node_map.get(node_id)))

    resolved = ConnectedInputs()

    for edge in snapshot.edges:
        if edge.target != node_id:
            continue
        handle_id = edge.target_handle
        if handle_id == EASE_CURVE_HANDLE:
            continue

        source = node_map.get(edge.source)
        if source is None:
            logger.debug("Edge %s references missing source %s", edge.id, edge.source)
            continue

        channel, value = get_source_output(source, edge.source_handle, edge)
        # None and "" both mean "nothing to pass along"
        if not value:
            continue

        if handle_id and handle_id in handle_to_name:
            _accumulate_dynamic(resolved.dynamic_inputs, handle_to_name[handle_id], value)

        if is_image_handle(handle_id):
            resolved.images.append(value)
        elif is_text_handle(handle_id):
            resolved.text = value
        elif channel == "3d":
            resolved.model3d = value
        elif channel == "video":
            resolved.videos.append(value)
        elif channel == "audio":
            resolved.audio.append(value)
        elif channel == "text":
            resolved.text = value
        elif not handle_id:
            resolved.images.append(value)
        else:
            logger.debug(
                "Dropping %s value from %s on handle %s of %s",
                channel, edge.source, handle_id, node_id,
            )

    resolved.ease_curve = _resolve_ease_curve(node_id, snapshot)
    return resolved
