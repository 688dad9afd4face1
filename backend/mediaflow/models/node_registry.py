"""
Node type registry: source of truth for what each node type is and produces.

Maps editor node type strings to their execution family and to the data key
and channel type of the value they expose to downstream nodes.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from mediaflow.models.graph import ChannelType


NodeFamily = Literal["source", "transform", "generator", "fan_out", "sink"]


class OutputSpec(BaseModel):
    key: str
    channel: ChannelType


class NodeTypeSpec(BaseModel):
    family: NodeFamily
    output: OutputSpec | None = None
    default_data: dict = {}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
# Keys match the node `type` values used in the editor.

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    # ---- Sources ----
    "ImageInput": NodeTypeSpec(
        family="source",
        output=OutputSpec(key="image", channel="image"),
        default_data={"image": None, "filename": None, "dimensions": None},
    ),
    "AudioInput": NodeTypeSpec(
        family="source",
        output=OutputSpec(key="audio_file", channel="audio"),
        default_data={"audio_file": None, "filename": None},
    ),

    # ---- Transforms ----
    "Prompt": NodeTypeSpec(
        family="transform",
        output=OutputSpec(key="prompt", channel="text"),
        default_data={"prompt": "", "variable_name": None},
    ),
    "PromptConstructor": NodeTypeSpec(
        family="transform",
        output=OutputSpec(key="output_text", channel="text"),
        default_data={"template": "", "output_text": None, "unresolved_vars": []},
    ),
    "Array": NodeTypeSpec(
        family="transform",
        output=OutputSpec(key="output_text", channel="text"),
        default_data={
            "input_text": None,
            "split_mode": "delimiter",
            "delimiter": "*",
            "regex_pattern": "",
            "trim_items": True,
            "remove_empty": True,
            "output_items": [],
            "output_text": None,
        },
    ),
    "Annotation": NodeTypeSpec(
        family="transform",
        output=OutputSpec(key="output_image", channel="image"),
        default_data={"source_image": None, "output_image": None, "annotations": []},
    ),

    # ---- Generators ----
    "GenerateImage": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_image", channel="image"),
        default_data={
            "input_images": [],
            "input_prompt": None,
            "output_image": None,
            "aspect_ratio": "1:1",
            "resolution": "1K",
            "model": "nano-banana",
            "use_google_search": False,
            "image_history": [],
            "selected_history_index": 0,
        },
    ),
    "GenerateVideo": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_video", channel="video"),
        default_data={
            "input_images": [],
            "input_prompt": None,
            "output_video": None,
            "video_history": [],
            "selected_video_history_index": 0,
        },
    ),
    "Generate3D": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_3d_url", channel="3d"),
        default_data={"input_images": [], "input_prompt": None, "output_3d_url": None},
    ),
    "GenerateAudio": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_audio", channel="audio"),
        default_data={"input_prompt": None, "output_audio": None, "audio_history": []},
    ),
    "LLMGenerate": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_text", channel="text"),
        default_data={
            "input_prompt": None,
            "input_images": [],
            "output_text": None,
            "provider": "google",
            "model": "gemini-2.5-flash",
            "temperature": 0.7,
            "max_tokens": 8192,
        },
    ),
    "VideoStitch": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_video", channel="video"),
        default_data={"output_video": None, "loop_count": 1, "progress": 0},
    ),
    "VideoTrim": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_video", channel="video"),
        default_data={"output_video": None, "start_time": 0.0, "end_time": 0.0, "progress": 0},
    ),
    "VideoFrameGrab": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_image", channel="image"),
        default_data={"output_image": None, "frame_position": "first"},
    ),
    "EaseCurve": NodeTypeSpec(
        family="generator",
        output=OutputSpec(key="output_video", channel="video"),
        default_data={
            "output_video": None,
            "bezier_handles": [0.42, 0.0, 0.58, 1.0],
            "easing_preset": None,
            "output_duration": 1.5,
            "progress": 0,
        },
    ),

    # ---- Fan-out ----
    "SplitGrid": NodeTypeSpec(
        family="fan_out",
        default_data={
            "source_image": None,
            "target_count": 4,
            "grid_rows": 2,
            "grid_cols": 2,
            "child_node_ids": [],
            "is_configured": False,
        },
    ),

    # ---- Sinks ----
    "Output": NodeTypeSpec(
        family="sink",
        default_data={"image": None, "video": None, "audio": None, "content_type": None},
    ),
    "OutputGallery": NodeTypeSpec(
        family="sink",
        default_data={"images": []},
    ),
    "ImageCompare": NodeTypeSpec(
        family="sink",
        default_data={"image_a": None, "image_b": None},
    ),
    "GLBViewer": NodeTypeSpec(
        family="sink",
        output=OutputSpec(key="captured_image", channel="image"),
        default_data={"glb_url": None, "filename": None, "captured_image": None},
    ),
}


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(node_type)


def is_regenerable(node_type: str) -> bool:
    spec = get_node_spec(node_type)
    return spec is not None and spec.family in ("generator", "fan_out")
