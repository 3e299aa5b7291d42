"""Tests for the authoring-side graph store."""

import json

import pytest

from cvflow.services.graph_store import (
    EdgeNotFoundError,
    FlowGraphStore,
    NodeNotFoundError,
    NoSelection,
    SelectedEdge,
    SelectedNode,
)
from cvflow.services.validation import FlowValidationError, parse_flow
from tests.factories import branching_flow, linear_flow


@pytest.fixture
def store():
    return FlowGraphStore(parse_flow(linear_flow()))


class TestLifecycle:
    def test_new_flow(self):
        store = FlowGraphStore()
        assert not store.has_document
        doc = store.new_flow("Graduate CV", "For recent graduates")
        assert doc.id.startswith("cv-flow-")
        assert doc.nodes == [] and doc.edges == []
        assert store.selection == NoSelection()

    def test_document_required(self):
        with pytest.raises(LookupError):
            FlowGraphStore().document

    def test_from_template_copies(self):
        template = parse_flow(branching_flow())
        store = FlowGraphStore()
        doc = store.from_template(template, name="My branching flow")
        assert doc.id != template.id
        assert doc.name == "My branching flow"
        store.delete_node("N1")
        assert template.get_node("N1") is not None


class TestNodes:
    def test_add_node_generates_id(self, store):
        before = store.document.updated_at
        node_id = store.add_node({"type": "message", "data": {"content": "Hello"}})
        assert len(node_id) == 9
        node = store.get_node(node_id)
        assert node.type == "message"
        assert node.data.content == "Hello"
        assert store.document.updated_at >= before

    def test_add_node_rejects_bad_kind(self, store):
        with pytest.raises(FlowValidationError):
            store.add_node({"type": "teleport"})
        assert len(store.document.nodes) == 6

    def test_update_node_merges_data(self, store):
        store.update_node("name", {"data": {"label": "Full name?", "required": False}})
        node = store.get_node("name")
        assert node.data.label == "Full name?"
        assert node.data.required is False
        assert node.data.variable_name == "name"

    def test_update_node_accepts_python_names(self, store):
        store.update_node("name", {"data": {"variable_name": "fullName"}})
        assert store.get_node("name").data.variable_name == "fullName"
        dumped = store.document.to_dict()["nodes"][2]["data"]
        assert dumped["variableName"] == "fullName"
        assert "variable_name" not in dumped

    def test_update_node_accepts_nested_condition(self):
        store = FlowGraphStore(parse_flow(branching_flow()))
        store.update_node(
            "cond",
            {
                "data": {
                    "condition": {
                        "operator": "or",
                        "rules": [{"field": "ab", "operator": "equals", "value": "ZZZ"}],
                    }
                }
            },
        )
        data = store.get_node("cond").data
        assert data.combinator == "or"
        assert [r.value for r in data.rules] == ["ZZZ"]

    def test_update_node_accepts_nested_wait(self, store):
        node_id = store.add_node({"type": "wait", "data": {"mode": "fixed", "durationMs": 1000}})
        store.update_node(node_id, {"data": {"wait": {"type": "random", "minDuration": 10, "maxDuration": 20}}})
        data = store.get_node(node_id).data
        assert data.mode == "random"
        assert data.range_ms == (10, 20)

    def test_update_missing_node(self, store):
        with pytest.raises(NodeNotFoundError):
            store.update_node("ghost", {"data": {}})

    def test_delete_node_cascades_edges_and_selection(self, store):
        store.select_node("name")
        store.delete_node("name")
        assert store.document.get_node("name") is None
        assert all("name" not in (e.source, e.target) for e in store.document.edges)
        assert store.selection == NoSelection()

    def test_delete_node_keeps_unrelated_selection(self, store):
        store.select_node("intro")
        store.delete_node("nickname")
        assert store.selection == SelectedNode("intro")

    def test_duplicate_node(self, store):
        copy_id = store.duplicate_node("intro")
        original, copy = store.get_node("intro"), store.get_node(copy_id)
        assert copy_id != "intro"
        assert copy.position.x == original.position.x + 50
        assert copy.position.y == original.position.y + 50
        assert copy.data.content == original.data.content
        assert copy.data.label.endswith("(Copy)")

    def test_move_node(self, store):
        store.move_node("intro", 320, 480)
        assert store.get_node("intro").position.x == 320
        assert store.get_node("intro").position.y == 480


class TestEdges:
    def test_add_edge(self, store):
        edge_id = store.add_edge({"source": "intro", "target": "bye"})
        assert store.get_edge(edge_id).target == "bye"

    def test_add_edge_to_unknown_node(self, store):
        with pytest.raises(NodeNotFoundError):
            store.add_edge({"source": "intro", "target": "ghost"})

    def test_update_edge(self, store):
        edge_id = store.document.edges[0].id
        store.update_edge(edge_id, {"source_handle": "true", "label": "yes"})
        edge = store.get_edge(edge_id)
        assert edge.source_handle == "true"
        assert edge.label == "yes"

    def test_delete_edge_clears_selection(self, store):
        edge_id = store.document.edges[0].id
        store.select_edge(edge_id)
        assert store.selection == SelectedEdge(edge_id)
        store.delete_edge(edge_id)
        assert store.selection == NoSelection()
        with pytest.raises(EdgeNotFoundError):
            store.get_edge(edge_id)

    def test_replace_graph(self, store):
        other = parse_flow(branching_flow())
        store.replace_graph(other.nodes, other.edges)
        assert [n.id for n in store.document.nodes] == [n.id for n in other.nodes]
        assert store.document.id == "flow-1"


class TestHistory:
    def test_undo_redo(self, store):
        store.delete_node("intro")
        assert store.document.get_node("intro") is None
        assert store.undo()
        assert store.document.get_node("intro") is not None
        assert store.redo()
        assert store.document.get_node("intro") is None

    def test_undo_with_empty_history(self, store):
        assert not store.can_undo()
        assert store.undo() is False


class TestImportExport:
    def test_export_then_import_is_lossless(self, store):
        exported = store.export_flow()
        other = FlowGraphStore()
        other.import_flow(exported)
        assert other.document.to_dict() == store.document.to_dict()
        assert json.loads(exported)["nodes"][0]["type"] == "start"

    def test_export_without_document(self):
        assert FlowGraphStore().export_flow() == ""

    def test_rejected_import_keeps_document(self, store):
        before = store.document.to_dict()
        bad = json.dumps({"id": "x", "name": "No start", "nodes": [{"id": "e", "type": "end"}], "edges": []})
        with pytest.raises(FlowValidationError):
            store.import_flow(bad)
        with pytest.raises(FlowValidationError):
            store.import_flow("{broken")
        assert store.document.to_dict() == before

    def test_import_resets_selection_and_history(self, store):
        store.select_node("intro")
        store.delete_node("bye")
        store.import_flow(json.dumps(branching_flow()))
        assert store.selection == NoSelection()
        assert not store.can_undo()
        assert store.validate().ok
