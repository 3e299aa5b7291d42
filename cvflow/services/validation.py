from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import ValidationError

from cvflow.schemas.flow import FlowDocument
from cvflow.services.conditions import OPERATORS

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.node_id is not None:
            out["nodeId"] = self.node_id
        if self.edge_id is not None:
            out["edgeId"] = self.edge_id
        return out


@dataclass(slots=True)
class ValidationResult:
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


class FlowValidationError(Exception):
    """A flow document was rejected; it is never repaired silently."""

    def __init__(self, result: ValidationResult):
        self.result = result
        summary = "; ".join(e.message for e in result.errors[:3])
        super().__init__(f"Invalid flow document: {summary}")


def validate_flow(doc: FlowDocument) -> ValidationResult:
    result = ValidationResult()
    error, warn = result.errors.append, result.warnings.append

    node_counts = Counter(n.id for n in doc.nodes)
    for node_id, count in node_counts.items():
        if count > 1:
            error(ValidationIssue("duplicate_node_id", f"Node id '{node_id}' is used {count} times", node_id=node_id))

    edge_counts = Counter(e.id for e in doc.edges)
    for edge_id, count in edge_counts.items():
        if count > 1:
            error(ValidationIssue("duplicate_edge_id", f"Edge id '{edge_id}' is used {count} times", edge_id=edge_id))

    for edge in doc.edges:
        if edge.source not in node_counts:
            error(ValidationIssue("dangling_edge_source", f"Edge '{edge.id}' starts at unknown node '{edge.source}'", edge_id=edge.id))
        if edge.target not in node_counts:
            error(ValidationIssue("dangling_edge_target", f"Edge '{edge.id}' points to unknown node '{edge.target}'", edge_id=edge.id))

    starts = doc.start_nodes()
    if not starts:
        error(ValidationIssue("missing_start", "Flow must have a start node"))
    elif len(starts) > 1:
        error(ValidationIssue("multiple_start", f"Flow has {len(starts)} start nodes; exactly one is allowed"))

    if not any(n.type == "end" for n in doc.nodes):
        warn(ValidationIssue("missing_end", "Flow should have an end node"))

    connected = {e.source for e in doc.edges} | {e.target for e in doc.edges}

    for node in doc.nodes:
        outgoing = doc.outgoing_edges(node.id)

        if node.id not in connected and len(doc.nodes) > 1:
            warn(ValidationIssue("orphaned_node", f"Node '{node.id}' is not connected", node_id=node.id))

        if node.type == "start" and doc.incoming_edges(node.id):
            warn(ValidationIssue("start_has_incoming_edges", "Start node should not have incoming edges", node_id=node.id))

        if node.type == "end":
            if outgoing:
                error(ValidationIssue("end_has_outgoing_edges", f"End node '{node.id}' must not have outgoing edges", node_id=node.id))
            continue

        if node.type == "condition":
            _check_condition(node, outgoing, error, warn)
            continue

        if len(outgoing) > 1:
            warn(
                ValidationIssue(
                    "multiple_outgoing_edges",
                    f"Node '{node.id}' has {len(outgoing)} outgoing edges; "
                    f"only the first ('{outgoing[0].id}') is followed",
                    node_id=node.id,
                )
            )

        if node.type == "question" and not node.data.variable_name:
            warn(ValidationIssue("question_missing_variable", f"Question '{node.id}' does not store its answer", node_id=node.id))
        elif node.type == "wait":
            _check_wait(node, error)
        elif node.type == "api-call" and not node.data.url.strip():
            error(ValidationIssue("invalid_api_call", f"API call node '{node.id}' has no url", node_id=node.id))
        elif node.type == "action" and node.data.kind == "set_variable":
            if not node.data.target_variable:
                error(ValidationIssue("invalid_set_variable", f"Action '{node.id}' does not name a variable to set", node_id=node.id))

    return result


def _check_condition(node, outgoing, error, warn) -> None:
    data = node.data
    rules = list(data.rules)
    for output in data.outputs:
        rules.extend(output.rules)
    for rule in rules:
        if rule.operator not in OPERATORS:
            error(ValidationIssue("unknown_operator", f"Condition '{node.id}' uses unknown operator '{rule.operator}'", node_id=node.id))

    handles = {e.source_handle for e in outgoing}
    if data.condition_type == "multi-output":
        for output in data.outputs:
            if output.value not in handles:
                warn(ValidationIssue("condition_output_missing_edge", f"Output '{output.value}' of condition '{node.id}' is not connected", node_id=node.id))
        return

    if "true" not in handles:
        error(ValidationIssue("condition_missing_true_edge", f"Condition '{node.id}' has no 'true' edge", node_id=node.id))
    if "false" not in handles:
        warn(ValidationIssue("condition_missing_false_edge", f"Condition '{node.id}' has no 'false' edge and stalls when it evaluates to false", node_id=node.id))


def _check_wait(node, error) -> None:
    data = node.data
    if data.mode == "fixed" and (data.duration_ms is None or data.duration_ms < 0):
        error(ValidationIssue("invalid_wait", f"Wait '{node.id}' needs a non-negative durationMs", node_id=node.id))
    elif data.mode == "random":
        low, high = data.range_ms or (None, None)
        if low is None or low < 0 or high < low:
            error(ValidationIssue("invalid_wait", f"Wait '{node.id}' needs rangeMs as [min, max]", node_id=node.id))
    elif data.mode == "until" and data.until_timestamp is None:
        error(ValidationIssue("invalid_wait", f"Wait '{node.id}' needs untilTimestamp", node_id=node.id))


def parse_flow(payload: Union[str, bytes, dict[str, Any]]) -> FlowDocument:
    """Build a document from JSON text or a decoded dict; malformed input raises FlowValidationError."""
    try:
        if isinstance(payload, (str, bytes)):
            return FlowDocument.model_validate_json(payload)
        return FlowDocument.model_validate(payload)
    except ValidationError as e:
        issues = [
            ValidationIssue(
                "malformed_document",
                f"{'.'.join(str(p) for p in err['loc']) or 'document'}: {err['msg']}",
            )
            for err in e.errors()
        ]
        logger.warning("Rejected malformed flow document (%d problems)", len(issues))
        raise FlowValidationError(ValidationResult(errors=issues)) from e


def ensure_valid(doc: FlowDocument) -> ValidationResult:
    result = validate_flow(doc)
    if not result.ok:
        logger.warning(
            "Flow %s failed validation: %s",
            doc.id,
            ", ".join(sorted({e.code for e in result.errors})),
        )
        raise FlowValidationError(result)
    return result
