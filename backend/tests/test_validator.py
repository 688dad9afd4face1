"""
Tests for structural workflow validation.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from mediaflow.services.errors import WorkflowValidationError
from mediaflow.services.validator import ensure_valid, validate_workflow
from conftest import make_edge, make_node


class TestValidateWorkflow:
    def test_empty_workflow(self):
        result = validate_workflow([], [])
        assert result.valid is False
        assert result.errors == ["Workflow is empty"]

    def test_valid_pipeline(self):
        nodes = [
            make_node("p", "Prompt", prompt="a fox"),
            make_node("g", "GenerateImage"),
            make_node("out", "Output"),
        ]
        edges = [make_edge("p", "g", "text"), make_edge("g", "out", "image")]
        result = validate_workflow(nodes, edges)
        assert result.valid is True
        assert result.errors == []

    def test_indexed_text_handle_counts(self):
        nodes = [make_node("p", "Prompt"), make_node("v", "GenerateVideo")]
        result = validate_workflow(nodes, [make_edge("p", "v", "text-0")])
        assert result.valid is True

    def test_image_edge_does_not_satisfy_text_requirement(self):
        nodes = [make_node("i", "ImageInput"), make_node("g", "GenerateImage")]
        result = validate_workflow(nodes, [make_edge("i", "g", "image")])
        assert result.errors == ['Generate node "g" missing text input']

    def test_annotation_with_manual_image_is_valid(self):
        nodes = [make_node("a", "Annotation", source_image="data:image/png;base64,AAA")]
        assert validate_workflow(nodes, []).valid is True

    def test_errors_grouped_by_node_type(self):
        nodes = [
            make_node("out1", "Output"),
            make_node("a1", "Annotation"),
            make_node("v1", "GenerateVideo"),
            make_node("g1", "GenerateImage"),
            make_node("g2", "GenerateImage"),
        ]
        result = validate_workflow(nodes, [])
        assert result.errors == [
            'Generate node "g1" missing text input',
            'Generate node "g2" missing text input',
            'Video node "v1" missing text input',
            'Annotation node "a1" missing image input',
            'Output node "out1" missing image input',
        ]

    def test_nodes_without_requirements_are_ignored(self):
        nodes = [make_node("p", "Prompt"), make_node("arr", "Array"), make_node("s", "SplitGrid")]
        assert validate_workflow(nodes, []).valid is True


class TestEnsureValid:
    def test_raises_with_all_errors(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            ensure_valid([make_node("g", "GenerateImage"), make_node("out", "Output")], [])
        assert exc_info.value.errors == [
            'Generate node "g" missing text input',
            'Output node "out" missing image input',
        ]

    def test_passes_valid_graph(self):
        nodes = [make_node("i", "ImageInput"), make_node("out", "Output")]
        ensure_valid(nodes, [make_edge("i", "out", "image")])
