"""
Generator and fan-out node handlers.

Each generator follows the same shape: validate inputs (recording the error on
the node before raising), mark the node `loading`, make one cancellable call
through the generation client, then record the output and a capped history
entry and mark the node `complete`. Persistence is fired without awaiting.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from pydantic import ValidationError

from mediaflow.services.errors import (
    AbortError,
    GenerationFailedError,
    MissingInputError,
    NoModelSelectedError,
    UnconfiguredNodeError,
)
from mediaflow.services.generation_client import (
    GenerationRequest,
    GenerationResult,
    SelectedModel,
)
from mediaflow.services.input_resolver import ConnectedInputs
from mediaflow.services.node_executor import (
    NodeExecutionContext,
    append_output_gallery_image,
    executor,
)
from mediaflow.services.output_persistence import SavedOutput

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _first(value: str | list[str] | None) -> str | None:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _selected_model(data: dict[str, Any]) -> SelectedModel | None:
    raw = data.get("selected_model")
    if raw is None:
        return None
    if isinstance(raw, SelectedModel):
        return raw
    try:
        return SelectedModel.model_validate(raw)
    except ValidationError:
        logger.warning("Ignoring malformed selected_model: %r", raw)
        return None


def _require_model(ctx: NodeExecutionContext, data: dict[str, Any]) -> SelectedModel:
    selected = _selected_model(data)
    if selected is None or not selected.model_id:
        ctx.fail(NoModelSelectedError())
    return selected


def _history_entry(prompt: str | None, **extra: Any) -> dict[str, Any]:
    timestamp = int(time.time() * 1000)
    return {"id": str(timestamp), "timestamp": timestamp, "prompt": prompt or "", **extra}


def prepend_history(entry: dict, history: list | None, limit: int) -> list:
    """Newest first, capped at `limit` entries."""
    return [entry, *(history or [])][:limit]


def _gather_images_and_prompt(
    ctx: NodeExecutionContext,
    inputs: ConnectedInputs,
    data: dict[str, Any],
) -> tuple[list[str], str | None]:
    """
    Pick the images and prompt a generator should use.

    On regeneration the values stored from the last run stand in for
    missing connections. Otherwise a schema-mapped `prompt` input may
    stand in for the text channel.
    """
    if ctx.use_stored_fallback:
        images = inputs.images or list(data.get("input_images") or [])
        prompt = inputs.text if inputs.text is not None else data.get("input_prompt")
    else:
        images = list(inputs.images)
        prompt = inputs.text or _first(inputs.dynamic_inputs.get("prompt"))
    return images, prompt


async def _generate(
    ctx: NodeExecutionContext,
    request: GenerationRequest,
    failure_message: str,
) -> GenerationResult:
    """
    Make the node's one provider call.

    Client errors are recorded on the node and re-raised. An abort puts the
    node back to idle.
    """
    if ctx.client is None:
        ctx.fail(GenerationFailedError("No generation client configured"))

    try:
        result = await ctx.client.generate(request, ctx.cancel_token)
    except AbortError:
        ctx.update_node_data(ctx.node_id, {"status": "idle", "error": None})
        raise
    except GenerationFailedError as e:
        ctx.fail(e)
    except Exception as e:
        message = getattr(e, "message", None) or str(e) or failure_message
        logger.warning("Generation for node %s failed: %s", ctx.node_id, message)
        ctx.update_node_data(ctx.node_id, {"status": "error", "error": message})
        raise

    if not result.success:
        ctx.fail(GenerationFailedError(result.error or failure_message))
    return result


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------


@executor("GenerateImage")
async def _exec_generate_image(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    images, prompt = _gather_images_and_prompt(ctx, inputs, data)
    if not prompt:
        ctx.fail(MissingInputError("Missing text input"))

    ctx.update_node_data(
        ctx.node_id,
        {"input_images": images, "input_prompt": prompt, "status": "loading", "error": None},
    )

    selected = _selected_model(data)
    is_3d_model = selected is not None and any("3d" in c for c in selected.capabilities)
    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="3d" if is_3d_model else "image",
        provider=selected.provider if selected else "gemini",
        prompt=prompt,
        images=images,
        selected_model=selected,
        model=data.get("model"),
        parameters=data.get("parameters") or {},
        dynamic_inputs=inputs.dynamic_inputs,
        options={
            "aspectRatio": data.get("aspect_ratio"),
            "resolution": data.get("resolution"),
            "useGoogleSearch": data.get("use_google_search", False),
        },
    )
    result = await _generate(ctx, request, "Generation failed")

    if result.model3d_url:
        ctx.update_node_data(
            ctx.node_id,
            {"output_3d_url": result.model3d_url, "output_image": None, "status": "complete", "error": None},
        )
        return

    image = result.image or _first(result.images)
    if not image:
        ctx.fail(GenerationFailedError(result.error or "Generation failed"))

    entry = _history_entry(
        prompt, aspect_ratio=data.get("aspect_ratio"), model=data.get("model")
    )
    ctx.update_node_data(
        ctx.node_id,
        {
            "output_image": image,
            "output_3d_url": None,
            "status": "complete",
            "error": None,
            "image_history": prepend_history(entry, data.get("image_history"), ctx.history_limit),
            "selected_history_index": 0,
        },
    )

    snapshot = ctx.snapshot()
    for edge in snapshot.outgoing_edges(ctx.node_id):
        target = snapshot.get_node(edge.target)
        if target is not None and target.type == "OutputGallery":
            append_output_gallery_image(ctx, target.id, image)

    ctx.save_output(
        SavedOutput(node_id=ctx.node_id, kind="image", content=image, prompt=prompt, output_id=entry["id"])
    )


@executor("GenerateVideo")
async def _exec_generate_video(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    if ctx.use_stored_fallback:
        images = inputs.images or list(data.get("input_images") or [])
        prompt = inputs.text if inputs.text is not None else data.get("input_prompt")
    else:
        images = list(inputs.images)
        prompt = inputs.text

    has_prompt = (
        prompt
        or inputs.dynamic_inputs.get("prompt")
        or inputs.dynamic_inputs.get("negative_prompt")
    )
    if not has_prompt and not images:
        ctx.fail(MissingInputError("Missing required inputs"))
    selected = _require_model(ctx, data)

    ctx.update_node_data(
        ctx.node_id,
        {"input_images": images, "input_prompt": prompt, "status": "loading", "error": None},
    )

    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="video",
        provider=selected.provider,
        prompt=prompt,
        images=images,
        selected_model=selected,
        parameters=data.get("parameters") or {},
        dynamic_inputs=inputs.dynamic_inputs,
    )
    result = await _generate(ctx, request, "Video generation failed")

    # Some providers answer with a still image
    video = result.output_video
    content = video or result.image
    if not content:
        ctx.fail(GenerationFailedError(result.error or "Video generation failed"))

    entry = _history_entry(prompt, model=selected.model_id)
    ctx.update_node_data(
        ctx.node_id,
        {
            "output_video": content,
            "status": "complete",
            "error": None,
            "video_history": prepend_history(entry, data.get("video_history"), ctx.history_limit),
            "selected_video_history_index": 0,
        },
    )
    ctx.save_output(
        SavedOutput(
            node_id=ctx.node_id,
            kind="video" if video else "image",
            content=content,
            prompt=prompt,
            output_id=entry["id"],
        )
    )


@executor("Generate3D")
async def _exec_generate_3d(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    images, prompt = _gather_images_and_prompt(ctx, inputs, data)

    # Image-to-3D and text-to-3D both exist, so either input suffices
    if not prompt and not images:
        ctx.fail(MissingInputError("Missing text or image input"))

    ctx.update_node_data(
        ctx.node_id,
        {"input_images": images, "input_prompt": prompt, "status": "loading", "error": None},
    )

    selected = _selected_model(data)
    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="3d",
        provider=selected.provider if selected else "fal",
        prompt=prompt or "",
        images=images,
        selected_model=selected,
        parameters=data.get("parameters") or {},
        dynamic_inputs=inputs.dynamic_inputs,
    )
    result = await _generate(ctx, request, "3D generation failed")
    if not result.model3d_url:
        ctx.fail(GenerationFailedError(result.error or "3D generation failed"))

    ctx.update_node_data(
        ctx.node_id,
        {"output_3d_url": result.model3d_url, "status": "complete", "error": None},
    )
    ctx.save_output(
        SavedOutput(node_id=ctx.node_id, kind="model3d", content=result.model3d_url, prompt=prompt)
    )


@executor("GenerateAudio")
async def _exec_generate_audio(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    if ctx.use_stored_fallback:
        prompt = inputs.text if inputs.text is not None else data.get("input_prompt")
    else:
        prompt = inputs.text

    if not prompt and not inputs.dynamic_inputs.get("prompt"):
        ctx.fail(MissingInputError("Missing text input for audio generation"))
    selected = _require_model(ctx, data)

    ctx.update_node_data(
        ctx.node_id, {"input_prompt": prompt, "status": "loading", "error": None}
    )

    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="audio",
        provider=selected.provider,
        prompt=prompt,
        selected_model=selected,
        parameters=data.get("parameters") or {},
        dynamic_inputs=inputs.dynamic_inputs,
    )
    result = await _generate(ctx, request, "Audio generation failed")
    audio = result.output_audio
    if not audio:
        ctx.fail(GenerationFailedError(result.error or "Audio generation failed"))

    entry = _history_entry(prompt, model=selected.model_id)
    ctx.update_node_data(
        ctx.node_id,
        {
            "output_audio": audio,
            "status": "complete",
            "error": None,
            "audio_history": prepend_history(entry, data.get("audio_history"), ctx.history_limit),
        },
    )
    ctx.save_output(
        SavedOutput(node_id=ctx.node_id, kind="audio", content=audio, prompt=prompt, output_id=entry["id"])
    )


@executor("LLMGenerate")
async def _exec_llm_generate(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    # The node's own prompt is used when nothing is connected
    prompt = inputs.text if inputs.text is not None else data.get("input_prompt")
    images = list(inputs.images)
    if not prompt:
        ctx.fail(
            MissingInputError("Missing text input - connect a prompt node or set internal prompt")
        )

    ctx.update_node_data(
        ctx.node_id,
        {"input_prompt": prompt, "input_images": images, "status": "loading", "error": None},
    )

    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="text",
        provider=data.get("provider"),
        prompt=prompt,
        images=images,
        model=data.get("model"),
        options={
            "temperature": data.get("temperature"),
            "maxTokens": data.get("max_tokens"),
        },
    )
    result = await _generate(ctx, request, "LLM generation failed")
    if not result.text:
        ctx.fail(GenerationFailedError(result.error or "LLM generation failed"))

    ctx.update_node_data(
        ctx.node_id, {"output_text": result.text, "status": "complete", "error": None}
    )


@executor("VideoStitch")
async def _exec_video_stitch(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    if len(inputs.videos) < 2:
        ctx.update_node_data(ctx.node_id, {"progress": 0})
        ctx.fail(MissingInputError("Need at least 2 video clips to stitch"))

    data = ctx.fresh_node().data
    ctx.update_node_data(ctx.node_id, {"status": "loading", "progress": 0, "error": None})

    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="video_stitch",
        videos=list(inputs.videos),
        audio=inputs.audio[:1],
        options={"loopCount": data.get("loop_count") or 1},
    )
    result = await _generate(ctx, request, "Stitch failed")
    if not result.output_video:
        ctx.update_node_data(ctx.node_id, {"progress": 0})
        ctx.fail(GenerationFailedError(result.error or "Stitch failed"))

    ctx.update_node_data(
        ctx.node_id,
        {"output_video": result.output_video, "status": "complete", "progress": 100, "error": None},
    )
    ctx.save_output(SavedOutput(node_id=ctx.node_id, kind="video", content=result.output_video))


@executor("VideoTrim")
async def _exec_video_trim(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    if not inputs.videos:
        ctx.fail(MissingInputError("Connect a video input to trim"))

    data = ctx.fresh_node().data
    start_time = float(data.get("start_time") or 0)
    end_time = float(data.get("end_time") or 0)
    if end_time <= 0 or start_time >= end_time:
        ctx.fail(MissingInputError("Set valid start/end trim times"))

    ctx.update_node_data(ctx.node_id, {"status": "loading", "progress": 0, "error": None})
    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="video_trim",
        videos=inputs.videos[:1],
        options={"startTime": start_time, "endTime": end_time},
    )
    result = await _generate(ctx, request, "Trim failed")
    if not result.output_video:
        ctx.update_node_data(ctx.node_id, {"progress": 0})
        ctx.fail(GenerationFailedError(result.error or "Trim failed"))

    ctx.update_node_data(
        ctx.node_id,
        {"output_video": result.output_video, "status": "complete", "progress": 100, "error": None},
    )
    ctx.save_output(SavedOutput(node_id=ctx.node_id, kind="video", content=result.output_video))


@executor("VideoFrameGrab")
async def _exec_video_frame_grab(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    if not inputs.videos:
        ctx.fail(MissingInputError("Connect a video input to extract a frame"))

    frame_position = ctx.fresh_node().data.get("frame_position")
    if frame_position not in ("first", "last"):
        frame_position = "first"

    ctx.update_node_data(ctx.node_id, {"status": "loading", "error": None})
    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="frame_grab",
        videos=inputs.videos[:1],
        options={"framePosition": frame_position},
    )
    result = await _generate(ctx, request, "Frame extraction failed")
    if not result.image:
        ctx.fail(GenerationFailedError(result.error or "Frame extraction failed"))

    ctx.update_node_data(ctx.node_id, {"output_image": result.image, "status": "complete", "error": None})


@executor("EaseCurve")
async def _exec_ease_curve(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    data = ctx.fresh_node().data
    bezier_handles = data.get("bezier_handles")
    easing_preset = data.get("easing_preset")

    # An upstream curve overrides the node's own settings
    if inputs.ease_curve is not None:
        bezier_handles = inputs.ease_curve.bezier_handles
        easing_preset = inputs.ease_curve.easing_preset
        inherited_from = next(
            (
                e.source
                for e in ctx.snapshot().incoming_edges(ctx.node_id)
                if e.target_handle == "easeCurve"
            ),
            None,
        )
        ctx.update_node_data(
            ctx.node_id,
            {
                "bezier_handles": bezier_handles,
                "easing_preset": easing_preset,
                "inherited_from": inherited_from,
            },
        )

    if not inputs.videos:
        ctx.fail(MissingInputError("Connect a video input to apply ease curve"))

    ctx.update_node_data(ctx.node_id, {"status": "loading", "progress": 0, "error": None})
    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="ease_curve",
        videos=inputs.videos[:1],
        options={
            "bezierHandles": bezier_handles,
            "easingPreset": easing_preset,
            "outputDuration": data.get("output_duration"),
        },
    )
    result = await _generate(ctx, request, "Ease curve failed")
    if not result.output_video:
        ctx.fail(GenerationFailedError(result.error or "Ease curve failed"))

    ctx.update_node_data(
        ctx.node_id,
        {"output_video": result.output_video, "status": "complete", "progress": 100, "error": None},
    )


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


def _child_image_input_id(child: Any) -> str | None:
    # Child entries are either plain ids or {"image_input": id, ...} sets
    if isinstance(child, str):
        return child
    if isinstance(child, dict):
        return child.get("image_input") or child.get("imageInput")
    return None


@executor("SplitGrid")
async def _exec_split_grid(ctx: NodeExecutionContext, inputs: ConnectedInputs) -> None:
    source_image = inputs.images[0] if inputs.images else None
    if not source_image:
        ctx.fail(MissingInputError("No input image connected"))

    data = ctx.fresh_node().data
    if not data.get("is_configured"):
        ctx.fail(UnconfiguredNodeError("Node not configured - open settings first"))

    rows = int(data.get("grid_rows") or 1)
    cols = int(data.get("grid_cols") or 1)
    ctx.update_node_data(
        ctx.node_id, {"source_image": source_image, "status": "loading", "error": None}
    )

    request = GenerationRequest(
        node_id=ctx.node_id,
        media_type="split_grid",
        images=[source_image],
        options={"gridRows": rows, "gridCols": cols},
    )
    result = await _generate(ctx, request, "Failed to split image")
    cells = result.images

    for index, child in enumerate(data.get("child_node_ids") or []):
        child_id = _child_image_input_id(child)
        if child_id is None or index >= len(cells) or not cells[index]:
            continue
        ctx.update_node_data(
            child_id,
            {
                "image": cells[index],
                "filename": f"split-{index // cols + 1}-{index % cols + 1}.png",
            },
        )

    logger.info("SplitGrid %s produced %d cells", ctx.node_id, len(cells))
    ctx.update_node_data(ctx.node_id, {"status": "complete", "error": None})
