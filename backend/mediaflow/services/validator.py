"""
Structural validation of a workflow graph.

Checks only that required inputs are wired; it never looks at runtime
values and collects every violation rather than stopping at the first.
"""

from __future__ import annotations

from mediaflow.models.execution import ValidationResult
from mediaflow.models.graph import Edge, Node
from mediaflow.services.errors import WorkflowValidationError


def _has_text_edge(node_id: str, edges: list[Edge]) -> bool:
    return any(
        e.target == node_id
        and e.target_handle is not None
        and (e.target_handle == "text" or e.target_handle.startswith("text-"))
        for e in edges
    )


def _has_incoming_edge(node_id: str, edges: list[Edge]) -> bool:
    return any(e.target == node_id for e in edges)


def validate_workflow(nodes: list[Node], edges: list[Edge]) -> ValidationResult:
    if not nodes:
        return ValidationResult(valid=False, errors=["Workflow is empty"])

    errors: list[str] = []
    # Grouped by node type, each group in declaration order
    for node in nodes:
        if node.type == "GenerateImage" and not _has_text_edge(node.id, edges):
            errors.append(f'Generate node "{node.id}" missing text input')
    for node in nodes:
        if node.type == "GenerateVideo" and not _has_text_edge(node.id, edges):
            errors.append(f'Video node "{node.id}" missing text input')
    for node in nodes:
        if node.type != "Annotation":
            continue
        has_manual_image = node.data.get("source_image") is not None
        if not _has_incoming_edge(node.id, edges) and not has_manual_image:
            errors.append(f'Annotation node "{node.id}" missing image input')
    for node in nodes:
        if node.type == "Output" and not _has_incoming_edge(node.id, edges):
            errors.append(f'Output node "{node.id}" missing image input')

    return ValidationResult(valid=not errors, errors=errors)
