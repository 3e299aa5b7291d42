"""
Authoring-side store for one flow document.

The designer edits exactly one document at a time. ``FlowGraphStore`` owns
that document and is its only writer: every structural edit goes through a
method here and bumps ``updated_at``. It is plain synchronous code with no
locking; a store instance must not be shared between editing sessions.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from cvflow.schemas.flow import (
    FlowDocument,
    FlowEdge,
    FlowNode,
    FlowSettings,
    Position,
    node_adapter,
    utcnow,
)
from cvflow.services.validation import (
    FlowValidationError,
    ValidationIssue,
    ValidationResult,
    ensure_valid,
    parse_flow,
    validate_flow,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class NodeNotFoundError(KeyError):
    pass


class EdgeNotFoundError(KeyError):
    pass


@dataclass(frozen=True, slots=True)
class NoSelection:
    pass


@dataclass(frozen=True, slots=True)
class SelectedNode:
    node_id: str


@dataclass(frozen=True, slots=True)
class SelectedEdge:
    edge_id: str


Selection = Union[NoSelection, SelectedNode, SelectedEdge]


def generate_id() -> str:
    return uuid.uuid4().hex[:9]


def _wire_keys(model_cls: type[BaseModel], patch: dict[str, Any]) -> dict[str, Any]:
    """Rename python-style or alternate keys in a patch to the keys the model dumps with."""
    renames: dict[str, str] = {}
    for name, info in model_cls.model_fields.items():
        target = info.alias or name
        renames[name] = target
        choices = getattr(info.validation_alias, "choices", None) or []
        for choice in choices:
            if isinstance(choice, str):
                renames[choice] = target
    return {renames.get(key, key): value for key, value in patch.items()}


def _rejected(code: str, message: str, exc: Optional[ValidationError] = None) -> FlowValidationError:
    issues = [ValidationIssue(code, message)]
    if exc is not None:
        issues.extend(
            ValidationIssue(code, f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
            for err in exc.errors()
        )
    return FlowValidationError(ValidationResult(errors=issues))


class FlowGraphStore:
    def __init__(self, document: Optional[FlowDocument] = None):
        self._document = document
        self._selection: Selection = NoSelection()
        self._past: list[FlowDocument] = []
        self._future: list[FlowDocument] = []

    # ------------------------------------------------------------------
    # document lifecycle
    # ------------------------------------------------------------------

    @property
    def document(self) -> FlowDocument:
        if self._document is None:
            raise LookupError("No flow loaded; create, load or import one first")
        return self._document

    @property
    def has_document(self) -> bool:
        return self._document is not None

    def load(self, document: FlowDocument) -> FlowDocument:
        self._document = document
        self._selection = NoSelection()
        self._past.clear()
        self._future.clear()
        return document

    def new_flow(self, name: str, description: str = "") -> FlowDocument:
        now = utcnow()
        doc = FlowDocument(
            id=f"cv-flow-{int(time.time() * 1000)}",
            name=name,
            description=description,
            settings=FlowSettings(),
            created_at=now,
            updated_at=now,
        )
        logger.info("New flow created with id %s", doc.id)
        return self.load(doc)

    def from_template(self, template: FlowDocument, name: Optional[str] = None) -> FlowDocument:
        """Start a new flow as a copy of template; node and edge ids are kept, the flow id is new."""
        now = utcnow()
        doc = template.model_copy(
            deep=True,
            update={
                "id": f"cv-flow-{int(time.time() * 1000)}",
                "name": name or template.name,
                "created_at": now,
                "updated_at": now,
            },
        )
        return self.load(doc)

    def _touch(self) -> None:
        self.document.updated_at = utcnow()

    def _checkpoint(self) -> None:
        self._past.append(self.document.model_copy(deep=True))
        if len(self._past) > HISTORY_LIMIT:
            self._past = self._past[-HISTORY_LIMIT:]
        self._future.clear()

    # ------------------------------------------------------------------
    # nodes
    # ------------------------------------------------------------------

    def _node_index(self, node_id: str) -> int:
        for i, node in enumerate(self.document.nodes):
            if node.id == node_id:
                return i
        raise NodeNotFoundError(node_id)

    def get_node(self, node_id: str) -> FlowNode:
        return self.document.nodes[self._node_index(node_id)]

    def _parse_node(self, raw: dict[str, Any]) -> FlowNode:
        try:
            return node_adapter.validate_python(raw)
        except ValidationError as e:
            raise _rejected("invalid_node", "Node rejected", e) from e

    def add_node(self, partial: Union[dict[str, Any], FlowNode]) -> str:
        raw = (
            partial.model_dump(by_alias=True)
            if isinstance(partial, BaseModel)
            else dict(partial)
        )
        raw.setdefault("id", generate_id())
        if any(n.id == raw["id"] for n in self.document.nodes):
            raise _rejected("duplicate_node_id", f"Node id '{raw['id']}' is already used")
        node = self._parse_node(raw)
        self._checkpoint()
        self.document.nodes.append(node)
        self._touch()
        return node.id

    def update_node(self, node_id: str, patch: dict[str, Any]) -> FlowNode:
        """Shallow-merge patch['data'] into the node's data; every other key replaces the old value."""
        index = self._node_index(node_id)
        current = self.document.nodes[index]
        raw = current.model_dump(by_alias=True)
        patch = dict(patch)
        data_patch = patch.pop("data", None)
        raw.update(patch)
        if data_patch:
            data_cls = type(current).model_fields["data"].annotation
            if raw.get("type", current.type) != current.type:
                # the data model of the new kind decides which keys survive
                raw["data"] = {**raw["data"], **data_patch}
            else:
                # designer-nested patches are flattened first so their keys override
                flat = data_cls.lift(dict(data_patch))
                raw["data"] = {**raw["data"], **_wire_keys(data_cls, flat)}
        if raw["id"] != node_id and any(n.id == raw["id"] for n in self.document.nodes):
            raise _rejected("duplicate_node_id", f"Node id '{raw['id']}' is already used")
        node = self._parse_node(raw)
        self._checkpoint()
        self.document.nodes[index] = node
        if node.id != node_id:
            for edge in self.document.edges:
                if edge.source == node_id:
                    edge.source = node.id
                if edge.target == node_id:
                    edge.target = node.id
            if self._selection == SelectedNode(node_id):
                self._selection = SelectedNode(node.id)
        self._touch()
        return node

    def delete_node(self, node_id: str) -> None:
        index = self._node_index(node_id)
        self._checkpoint()
        doc = self.document
        del doc.nodes[index]
        removed_edges = {e.id for e in doc.edges if e.source == node_id or e.target == node_id}
        doc.edges = [e for e in doc.edges if e.id not in removed_edges]
        if self._selection == SelectedNode(node_id) or (
            isinstance(self._selection, SelectedEdge)
            and self._selection.edge_id in removed_edges
        ):
            self._selection = NoSelection()
        self._touch()

    def duplicate_node(self, node_id: str) -> str:
        node = self.get_node(node_id)
        raw = node.model_dump(by_alias=True)
        raw["id"] = generate_id()
        raw["position"] = {"x": node.position.x + 50, "y": node.position.y + 50}
        label = raw["data"].get("label") or node.type
        raw["data"]["label"] = f"{label} (Copy)"
        return self.add_node(raw)

    def move_node(self, node_id: str, x: float, y: float) -> None:
        node = self.get_node(node_id)
        node.position = Position(x=x, y=y)
        self._touch()

    # ------------------------------------------------------------------
    # edges
    # ------------------------------------------------------------------

    def _edge_index(self, edge_id: str) -> int:
        for i, edge in enumerate(self.document.edges):
            if edge.id == edge_id:
                return i
        raise EdgeNotFoundError(edge_id)

    def get_edge(self, edge_id: str) -> FlowEdge:
        return self.document.edges[self._edge_index(edge_id)]

    def _parse_edge(self, raw: dict[str, Any]) -> FlowEdge:
        try:
            edge = FlowEdge.model_validate(raw)
        except ValidationError as e:
            raise _rejected("invalid_edge", "Edge rejected", e) from e
        for endpoint in (edge.source, edge.target):
            self._node_index(endpoint)
        return edge

    def add_edge(self, partial: Union[dict[str, Any], FlowEdge]) -> str:
        raw = (
            partial.model_dump(by_alias=True)
            if isinstance(partial, BaseModel)
            else dict(partial)
        )
        raw.setdefault("id", generate_id())
        if any(e.id == raw["id"] for e in self.document.edges):
            raise _rejected("duplicate_edge_id", f"Edge id '{raw['id']}' is already used")
        edge = self._parse_edge(raw)
        self._checkpoint()
        self.document.edges.append(edge)
        self._touch()
        return edge.id

    def update_edge(self, edge_id: str, patch: dict[str, Any]) -> FlowEdge:
        index = self._edge_index(edge_id)
        raw = self.document.edges[index].model_dump(by_alias=True)
        raw.update(_wire_keys(FlowEdge, patch))
        raw["id"] = edge_id
        edge = self._parse_edge(raw)
        self._checkpoint()
        self.document.edges[index] = edge
        self._touch()
        return edge

    def delete_edge(self, edge_id: str) -> None:
        index = self._edge_index(edge_id)
        self._checkpoint()
        del self.document.edges[index]
        if self._selection == SelectedEdge(edge_id):
            self._selection = NoSelection()
        self._touch()

    def replace_graph(self, nodes: list[Any], edges: list[Any]) -> None:
        """Swap in the designer canvas wholesale (nodes and edges as dicts or models)."""
        doc = self.document
        raw = doc.model_dump(by_alias=True)
        raw["nodes"] = [n.model_dump(by_alias=True) if isinstance(n, BaseModel) else n for n in nodes]
        raw["edges"] = [e.model_dump(by_alias=True) if isinstance(e, BaseModel) else e for e in edges]
        updated = parse_flow(raw)
        self._checkpoint()
        doc.nodes = updated.nodes
        doc.edges = updated.edges
        self._selection = NoSelection()
        self._touch()

    # ------------------------------------------------------------------
    # selection
    # ------------------------------------------------------------------

    @property
    def selection(self) -> Selection:
        return self._selection

    def select_node(self, node_id: str) -> None:
        self._node_index(node_id)
        self._selection = SelectedNode(node_id)

    def select_edge(self, edge_id: str) -> None:
        self._edge_index(edge_id)
        self._selection = SelectedEdge(edge_id)

    def clear_selection(self) -> None:
        self._selection = NoSelection()

    @property
    def selected_node(self) -> Optional[FlowNode]:
        if isinstance(self._selection, SelectedNode):
            return self.get_node(self._selection.node_id)
        return None

    @property
    def selected_edge(self) -> Optional[FlowEdge]:
        if isinstance(self._selection, SelectedEdge):
            return self.get_edge(self._selection.edge_id)
        return None

    # ------------------------------------------------------------------
    # history
    # ------------------------------------------------------------------

    def can_undo(self) -> bool:
        return bool(self._past)

    def can_redo(self) -> bool:
        return bool(self._future)

    def undo(self) -> bool:
        if not self._past:
            return False
        self._future.insert(0, self.document.model_copy(deep=True))
        self._document = self._past.pop()
        self._drop_stale_selection()
        return True

    def redo(self) -> bool:
        if not self._future:
            return False
        self._past.append(self.document.model_copy(deep=True))
        self._document = self._future.pop(0)
        self._drop_stale_selection()
        return True

    def _drop_stale_selection(self) -> None:
        sel = self._selection
        if isinstance(sel, SelectedNode) and self.document.get_node(sel.node_id) is None:
            self._selection = NoSelection()
        elif isinstance(sel, SelectedEdge) and self.document.get_edge(sel.edge_id) is None:
            self._selection = NoSelection()

    # ------------------------------------------------------------------
    # import / export
    # ------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        return validate_flow(self.document)

    def export_flow(self) -> str:
        if self._document is None:
            return ""
        return self._document.to_json()

    def import_flow(self, raw: Union[str, bytes]) -> FlowDocument:
        """Replace the whole document; nothing changes if the import is rejected."""
        doc = parse_flow(raw)
        ensure_valid(doc)
        logger.info("Imported flow %s (%d nodes, %d edges)", doc.id, len(doc.nodes), len(doc.edges))
        return self.load(doc)
