"""GraphRepository (file-backed saved graphs) and the document Workspace."""

from __future__ import annotations

import json

import pytest

from devops_flow.graph.model import Connection, GraphNode, NodeKind, Position, Viewport
from devops_flow.graph.store import GraphStore
from devops_flow.persistence.files import (
    GraphNotFoundError,
    GraphRepository,
    GraphStorageError,
    InvalidGraphIdError,
    sanitize_flow_id,
)
from devops_flow.workspace import Workspace


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Ticker:
    """Returns increasing ISO timestamps so updated_at ordering is deterministic."""

    def __init__(self) -> None:
        self.n = 0

    def __call__(self) -> str:
        self.n += 1
        return f"2024-01-01T00:00:{self.n:02d}Z"


_NODES = [{"id": "a", "type": "gitlab", "position": {"x": 0, "y": 0}, "data": {"label": "Repo"}}]


# ---------------------------------------------------------------------------
# Id sanitization
# ---------------------------------------------------------------------------


class TestSanitizeFlowId:
    def test_strips_path_characters(self):
        assert sanitize_flow_id("../../etc/passwd") == "etcpasswd"
        assert sanitize_flow_id("flow-1700000000000") == "flow-1700000000000"

    @pytest.mark.parametrize("bad", ["", "   ", "../..", "x" * 101])
    def test_rejects_unusable_ids(self, bad):
        with pytest.raises(InvalidGraphIdError):
            sanitize_flow_id(bad)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TestGraphRepository:
    def test_save_and_load(self, tmp_path):
        repo = GraphRepository(tmp_path, now=Ticker())
        repo.save_graph("flow-1", "Pipeline", _NODES, [], {"x": 1, "y": 2, "zoom": 1.5})

        graph = repo.load_graph("flow-1")
        assert graph.name == "Pipeline"
        assert graph.nodes == _NODES
        assert graph.viewport == {"x": 1, "y": 2, "zoom": 1.5}
        assert (tmp_path / "flows" / "flow-1.json").exists()
        assert not (tmp_path / "flows" / "flow-1.tmp").exists()

    def test_overwrite_keeps_created_at(self, tmp_path):
        repo = GraphRepository(tmp_path, now=Ticker())
        first = repo.save_graph("flow-1", "v1", [], [], None)
        second = repo.save_graph("flow-1", "v2", [], [], None)
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

    def test_list_most_recent_first_and_skips_bad_files(self, tmp_path):
        repo = GraphRepository(tmp_path, now=Ticker())
        repo.save_graph("old", "Old", [], [], None)
        repo.save_graph("new", "New", [], [], None)
        (tmp_path / "flows" / "junk.json").write_text("{oops", encoding="utf-8")
        (tmp_path / "flows" / "partial.json").write_text(json.dumps({"id": "p"}), encoding="utf-8")

        assert [g.id for g in repo.list_graphs()] == ["new", "old"]

    def test_list_without_directory_is_empty(self, tmp_path):
        assert GraphRepository(tmp_path / "missing").list_graphs() == []

    def test_load_missing_raises_not_found(self, tmp_path):
        with pytest.raises(GraphNotFoundError, match="Flow not found: nope"):
            GraphRepository(tmp_path).load_graph("nope")

    def test_load_corrupt_raises_storage_error(self, tmp_path):
        repo = GraphRepository(tmp_path)
        (tmp_path / "flows").mkdir()
        (tmp_path / "flows" / "bad.json").write_text("[]", encoding="utf-8")
        with pytest.raises(GraphStorageError):
            repo.load_graph("bad")

    def test_name_validation(self, tmp_path):
        repo = GraphRepository(tmp_path)
        with pytest.raises(InvalidGraphIdError):
            repo.save_graph("flow-1", "  ", [], [], None)
        with pytest.raises(InvalidGraphIdError):
            repo.save_graph("flow-1", "n" * 201, [], [], None)

    def test_delete(self, tmp_path):
        repo = GraphRepository(tmp_path)
        repo.save_graph("flow-1", "x", [], [], None)
        repo.delete_graph("flow-1")
        assert repo.list_graphs() == []
        with pytest.raises(GraphNotFoundError):
            repo.delete_graph("flow-1")


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------


def _workspace(tmp_path) -> Workspace:
    return Workspace(GraphStore(), GraphRepository(tmp_path, now=Ticker()), clock=lambda: 1700000000.0)


class TestWorkspace:
    def test_save_new_graph_assigns_id_and_default_name(self, tmp_path):
        ws = _workspace(tmp_path)
        ws.store.add_node(GraphNode(id="a", kind=NodeKind.GITLAB))

        graph = ws.save()

        assert graph.id == "flow-1700000000000"
        assert graph.name.startswith("Flow ")
        assert ws.store.current_graph_id == "flow-1700000000000"
        assert ws.store.is_dirty is False

    def test_save_again_reuses_id_and_name(self, tmp_path):
        ws = _workspace(tmp_path)
        ws.save("Pipeline")
        ws.store.add_node(GraphNode(id="b"))
        graph = ws.save()
        assert graph.name == "Pipeline"
        assert [g.id for g in ws.list_graphs()] == ["flow-1700000000000"]

    def test_open_round_trip(self, tmp_path):
        ws = _workspace(tmp_path)
        store = ws.store
        store.add_node(GraphNode(id="a", kind=NodeKind.JENKINS, position=Position(5, 6), data={"integrationId": "ci"}))
        store.add_node(GraphNode(id="b", kind=NodeKind.KUBERNETES))
        store.connect(Connection("a", "b"))
        store.set_viewport(Viewport(10, 20, 1.5))
        ws.save("Deploy")

        ws.new_graph()
        assert store.nodes == [] and store.current_graph_id is None

        ws.open("flow-1700000000000")
        assert [n.id for n in store.nodes] == ["a", "b"]
        assert store.get_node("a").data == {"integrationId": "ci"}
        assert [e.id for e in store.edges] == ["edge-a-b"]
        assert store.viewport == Viewport(10, 20, 1.5)
        assert store.is_dirty is False
        assert ws.current_name == "Deploy"

    def test_open_missing_leaves_graph_untouched(self, tmp_path):
        ws = _workspace(tmp_path)
        ws.store.add_node(GraphNode(id="a"))
        with pytest.raises(GraphNotFoundError):
            ws.open("missing")
        assert [n.id for n in ws.store.nodes] == ["a"]

    def test_delete_current(self, tmp_path):
        ws = _workspace(tmp_path)
        assert ws.delete_current() is False
        ws.save("x")
        assert ws.delete_current() is True
        assert ws.list_graphs() == []
        assert ws.store.current_graph_id is None
