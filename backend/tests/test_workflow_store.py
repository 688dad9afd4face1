"""
Tests for the in-memory workflow store.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from mediaflow.models.graph import GraphSnapshot, Group
from conftest import make_edge, make_node, make_store


class TestInMemoryWorkflowStore:
    def test_defaults_merged_under_node_data(self):
        store = make_store([make_node("g", "GenerateImage", aspect_ratio="16:9")])
        data = store.get_node("g").data
        assert data["aspect_ratio"] == "16:9"
        assert data["resolution"] == "1K"
        assert data["status"] == "idle"
        assert data["error"] is None

    def test_unknown_type_keeps_its_data(self):
        store = make_store([make_node("x", "SomethingNew", foo=1)])
        assert store.get_node("x").data == {"foo": 1, "status": "idle", "error": None}

    def test_snapshot_is_a_copy(self):
        store = make_store([make_node("p", "Prompt", prompt="a")])
        snapshot = store.snapshot()
        snapshot.nodes[0].data["prompt"] = "mutated"
        store.get_node("p").data["prompt"] = "mutated too"
        assert store.get_node("p").data["prompt"] == "a"

    def test_update_node_data_merges(self):
        store = make_store([make_node("g", "GenerateImage")])
        history = [{"id": "1"}]
        store.update_node_data("g", {"status": "loading", "image_history": history})
        history.append({"id": "2"})

        data = store.get_node("g").data
        assert data["status"] == "loading"
        assert data["image_history"] == [{"id": "1"}]
        assert data["aspect_ratio"] == "1:1"

    def test_update_unknown_node_is_ignored(self):
        store = make_store([])
        store.update_node_data("ghost", {"status": "error"})
        assert store.get_node("ghost") is None

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError, match="Duplicate node ID"):
            make_store([make_node("a", "Prompt"), make_node("a", "Prompt")])
        with pytest.raises(ValueError, match="Duplicate edge ID"):
            make_store(
                [make_node("a", "Prompt"), make_node("b", "Prompt")],
                [make_edge("a", "b", "text", edge_id="e"), make_edge("a", "b", "text-1", edge_id="e")],
            )

    def test_load_replaces_graph(self):
        store = make_store([make_node("a", "Prompt")])
        store.load(
            GraphSnapshot(
                nodes=[make_node("b", "Prompt", group_id="g")],
                groups={"g": Group(id="g", locked=True)},
            )
        )
        snapshot = store.snapshot()
        assert [n.id for n in snapshot.nodes] == ["b"]
        assert snapshot.groups["g"].locked is True
        assert store.get_node("a") is None
