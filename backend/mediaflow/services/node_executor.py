"""
Node execution dispatch.

Every node type has exactly one async handler registered with `@executor`.
A handler receives the execution context and the node's resolved inputs, does
its work, and writes results back through `ctx.update_node_data`. Handlers
signal failure by raising a NodeExecutionError after recording the message on
the node; AbortError passes through untouched.

Source, transform and sink handlers live here. Generator and fan-out handlers
live in generation_executors, which registers itself on import.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from mediaflow.config import EngineConfig
from mediaflow.models.graph import GraphSnapshot, Node
from mediaflow.models.node_registry import NODE_REGISTRY
from mediaflow.services.cancellation import CancelToken
from mediaflow.services.errors import AbortError, NodeExecutionError
from mediaflow.services.generation_client import GenerationClient, ProviderSettings
from mediaflow.services.input_resolver import (
    ConnectedInputs,
    is_text_handle,
    resolve_connected_inputs,
)
from mediaflow.services.output_persistence import (
    OutputPersistence,
    SavedOutput,
    schedule_save,
)
from mediaflow.services.workflow_store import WorkflowStore
from mediaflow.utils.text_parsing import parse_text_to_array, parse_var_tags, resolve_template

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


class NodeExecutionContext:
    """
    Everything a handler may touch while executing one node.

    `node` is the copy taken when the batch started and may be stale; use
    `fresh_node()` for current data. Writes go through `update_node_data`,
    which drops them once the owning run is no longer current.
    """

    def __init__(
        self,
        node: Node,
        store: WorkflowStore,
        cancel_token: CancelToken,
        client: GenerationClient | None = None,
        provider_settings: ProviderSettings | None = None,
        persistence: OutputPersistence | None = None,
        use_stored_fallback: bool = False,
        history_limit: int | None = None,
        is_current: Callable[[], bool] | None = None,
    ):
        self.node = node
        self.store = store
        self.cancel_token = cancel_token
        self.client = client
        self.provider_settings = provider_settings or ProviderSettings()
        self.persistence = persistence
        self.use_stored_fallback = use_stored_fallback
        self.history_limit = history_limit or EngineConfig.history_limit()
        self._is_current = is_current or (lambda: True)

    @property
    def node_id(self) -> str:
        return self.node.id

    def update_node_data(self, node_id: str, partial: dict[str, Any]) -> None:
        if not self._is_current():
            logger.debug("Discarding stale update for node %s", node_id)
            return
        self.store.update_node_data(node_id, partial)

    def fresh_node(self, node_id: str | None = None) -> Node:
        target = node_id or self.node.id
        node = self.store.get_node(target)
        if node is None and target == self.node.id:
            return self.node
        if node is None:
            raise NodeExecutionError(f"Node {target} not found", node_id=self.node.id)
        return node

    def snapshot(self) -> GraphSnapshot:
        return self.store.snapshot()

    def get_connected_inputs(self, node_id: str | None = None) -> ConnectedInputs:
        return resolve_connected_inputs(node_id or self.node.id, self.store.snapshot())

    def fail(self, error: NodeExecutionError) -> None:
        """Record `error` on the node and raise it."""
        if error.node_id is None:
            error.node_id = self.node.id
        self.update_node_data(self.node.id, {"status": "error", "error": error.message})
        raise error

    def save_output(self, output: SavedOutput) -> None:
        schedule_save(self.persistence, output)


# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

# Maps node type names to async handlers: handler(ctx, inputs) -> None
_registry: dict[str, Callable] = {}


def executor(node_type: str):
    """
    Decorator that registers the async handler for a node type.

    Usage:
        @executor("Prompt")
        async def _exec_prompt(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
            ...
    """
    if node_type not in NODE_REGISTRY:
        raise ValueError(f"Cannot register executor for unknown node type '{node_type}'")

    def decorator(fn: Callable):
        _registry[node_type] = fn
        return fn
    return decorator


def get_executor(node_type: str) -> Callable | None:
    return _registry.get(node_type)


def registered_node_types() -> list[str]:
    return sorted(_registry)


async def execute_node(ctx: NodeExecutionContext) -> None:
    """Resolve the node's inputs and run its handler."""
    node = ctx.node
    handler = _registry.get(node.type)
    if handler is None:
        ctx.fail(NodeExecutionError(f"No executor for node type '{node.type}'"))

    ctx.cancel_token.raise_if_cancelled()
    inputs = ctx.get_connected_inputs()

    try:
        await handler(ctx, inputs)
    except AbortError:
        raise
    except NodeExecutionError as e:
        if e.node_id is None:
            e.node_id = node.id
        ctx.update_node_data(node.id, {"status": "error", "error": e.message})
        raise
    except Exception as e:
        logger.exception("Node %s (%s) failed unexpectedly", node.id, node.type)
        ctx.update_node_data(node.id, {"status": "error", "error": str(e)})
        raise NodeExecutionError(str(e), node_id=node.id) from e


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


@executor("ImageInput")
async def _exec_image_input(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    return None


@executor("AudioInput")
async def _exec_audio_input(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    # A connected upstream audio wins over the uploaded file
    if inputs.audio:
        ctx.update_node_data(ctx.node_id, {"audio_file": inputs.audio[0]})


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------


@executor("Prompt")
async def _exec_prompt(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    if inputs.text is not None:
        ctx.update_node_data(ctx.node_id, {"prompt": inputs.text})


def _text_of(node: Node) -> str | None:
    data = node.data
    if node.type == "Prompt":
        return data.get("prompt") or None
    if node.type == "LLMGenerate":
        return data.get("output_text") or None
    if node.type == "PromptConstructor":
        output_text = data.get("output_text")
        return output_text if output_text is not None else data.get("template")
    return None


@executor("PromptConstructor")
async def _exec_prompt_constructor(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    """
    Fill the template's @name references.

    Named Prompt nodes supply their prompt under their variable name. Inline
    <var="name">value</var> tags in any connected text fill the remaining
    names without overriding a named Prompt.
    """
    template = ctx.fresh_node().data.get("template") or ""
    snapshot = ctx.snapshot()
    node_map = snapshot.node_map()

    text_sources = [
        node_map[e.source]
        for e in snapshot.incoming_edges(ctx.node_id)
        if is_text_handle(e.target_handle) and e.source in node_map
    ]

    variables: dict[str, str] = {}
    for source in text_sources:
        name = source.data.get("variable_name")
        if source.type == "Prompt" and name:
            variables[name] = source.data.get("prompt") or ""

    for source in text_sources:
        text = _text_of(source)
        if not text:
            continue
        for name, value in parse_var_tags(text):
            variables.setdefault(name, value)

    resolved, unresolved = resolve_template(template, variables)
    if unresolved:
        logger.debug("PromptConstructor %s left unresolved: %s", ctx.node_id, unresolved)
    ctx.update_node_data(
        ctx.node_id,
        {"output_text": resolved, "unresolved_vars": unresolved},
    )


@executor("Array")
async def _exec_array(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    input_text = inputs.text if inputs.text is not None else data.get("input_text")
    try:
        items = parse_text_to_array(
            input_text,
            split_mode=data.get("split_mode") or "delimiter",
            delimiter=data.get("delimiter") or "",
            regex_pattern=data.get("regex_pattern") or "",
            trim_items=data.get("trim_items", True),
            remove_empty=data.get("remove_empty", True),
        )
    except (ValueError, re.error) as e:
        ctx.fail(NodeExecutionError(f"Invalid split pattern: {e}"))

    ctx.update_node_data(
        ctx.node_id,
        {
            "input_text": input_text,
            "output_items": items,
            "output_text": "\n".join(items),
            "error": None,
        },
    )


@executor("Annotation")
async def _exec_annotation(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    if not inputs.images:
        return
    image = inputs.images[0]
    data = ctx.fresh_node().data
    partial: dict[str, Any] = {"source_image": image}
    # Pass through unless the user has drawn on the previous source
    output_image = data.get("output_image")
    if not output_image or output_image == data.get("source_image"):
        partial["output_image"] = image
    ctx.update_node_data(ctx.node_id, partial)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

_VIDEO_MARKERS = (".mp4", ".webm", "fal.media")


def looks_like_video(content: str) -> bool:
    return content.startswith("data:video/") or any(m in content for m in _VIDEO_MARKERS)


@executor("Output")
async def _exec_output(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    filename = ctx.node.data.get("output_filename") or None

    if inputs.audio:
        content = inputs.audio[0]
        ctx.update_node_data(
            ctx.node_id,
            {"audio": content, "image": None, "video": None, "content_type": "audio"},
        )
        kind = "audio"
    elif inputs.videos:
        content = inputs.videos[0]
        ctx.update_node_data(
            ctx.node_id,
            {"image": content, "video": content, "content_type": "video"},
        )
        kind = "video"
    elif inputs.images:
        content = inputs.images[0]
        # Video data can reach the image channel through untyped handles
        if looks_like_video(content):
            ctx.update_node_data(
                ctx.node_id,
                {"image": content, "video": content, "content_type": "video"},
            )
            kind = "video"
        else:
            ctx.update_node_data(
                ctx.node_id,
                {"image": content, "video": None, "content_type": "image"},
            )
            kind = "image"
    else:
        return

    ctx.save_output(
        SavedOutput(
            node_id=ctx.node_id,
            kind=kind,
            content=content,
            filename=filename,
            subdirectory="outputs",
        )
    )


def append_output_gallery_image(ctx: NodeExecutionContext, gallery_id: str, image: str) -> None:
    """Prepend `image` to a gallery unless it is already there."""
    gallery = ctx.store.get_node(gallery_id)
    if gallery is None:
        return
    images = list(gallery.data.get("images") or [])
    if image in images:
        return
    ctx.update_node_data(gallery_id, {"images": [image, *images]})


@executor("OutputGallery")
async def _exec_output_gallery(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    existing = list(ctx.fresh_node().data.get("images") or [])
    seen = set(existing)
    new_images = []
    for image in inputs.images:
        if image not in seen:
            seen.add(image)
            new_images.append(image)
    if new_images:
        ctx.update_node_data(ctx.node_id, {"images": new_images + existing})


@executor("ImageCompare")
async def _exec_image_compare(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    images = inputs.images
    ctx.update_node_data(
        ctx.node_id,
        {
            "image_a": images[0] if len(images) > 0 else None,
            "image_b": images[1] if len(images) > 1 else None,
        },
    )


@executor("GLBViewer")
async def _exec_glb_viewer(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    if inputs.model3d:
        ctx.update_node_data(
            ctx.node_id,
            {"glb_url": inputs.model3d, "filename": "generated.glb", "captured_image": None},
        )


# Generator and fan-out handlers register themselves on import
from mediaflow.services import generation_executors  # noqa: E402,F401
