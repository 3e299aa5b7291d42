"""
Flow traversal.

``step`` moves a conversation one node forward. It is synchronous and pure:
all state lives in the bindings passed in (a fresh dict is returned), and
anything that touches the outside world (HTTP, e-mail, SMS, timers) is
returned as an ``Effect`` for the driver to carry out. The driver reports
the outcome by calling ``step`` again on the same node with an
``EffectResult``.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from cvflow.schemas.flow import Bindings, FlowDocument, FlowEdge, Scalar
from cvflow.services.conditions import evaluate

logger = logging.getLogger(__name__)

SKIPPED_PLACEHOLDER = "[Skipped]"
DEFAULT_MAX_STEPS = 200


class StepStatus(str, enum.Enum):
    ADVANCED = "advanced"
    AWAITING_INPUT = "awaiting_input"
    AWAITING_EFFECT = "awaiting_effect"
    EFFECT_FAILED = "effect_failed"
    COMPLETED = "completed"
    STALLED = "stalled"
    DEAD_END = "dead_end"
    UNKNOWN_NODE = "unknown_node"


TERMINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.STALLED, StepStatus.DEAD_END, StepStatus.UNKNOWN_NODE}
)


class EffectType(str, enum.Enum):
    ASK = "ask"
    SAY = "say"
    SEND_EMAIL = "send_email"
    SEND_SMS = "send_sms"
    CALL_API = "call_api_side_effect"
    API_CALL = "api_call"
    WAIT = "wait"
    STALLED = "stalled"
    DEAD_END = "dead_end"
    UNKNOWN_NODE = "unknown_node"


# Effects that must be fulfilled and reported back before the flow moves on
DEFERRED_EFFECTS = frozenset(
    {
        EffectType.SEND_EMAIL,
        EffectType.SEND_SMS,
        EffectType.CALL_API,
        EffectType.API_CALL,
        EffectType.WAIT,
    }
)


@dataclass(frozen=True, slots=True)
class Effect:
    type: EffectType
    node_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def deferred(self) -> bool:
        return self.type in DEFERRED_EFFECTS

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "nodeId": self.node_id, "payload": self.payload}


@dataclass(frozen=True, slots=True)
class EffectResult:
    """Outcome of a deferred effect, reported back by the executor."""

    ok: bool
    data: Any = None
    bindings: dict[str, Scalar] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass(slots=True)
class StepResult:
    status: StepStatus
    node_id: str
    next_node_id: Optional[str]
    bindings: Bindings
    effects: list[Effect] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class FlowLoopError(Exception):
    """advance() visited too many nodes without needing input; the flow most likely cycles."""

    def __init__(self, flow_id: str, node_id: Optional[str], max_steps: int):
        self.flow_id = flow_id
        self.node_id = node_id
        self.max_steps = max_steps
        super().__init__(
            f"Flow {flow_id} did not pause within {max_steps} steps (last node: {node_id})"
        )


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def render_text(template: str, bindings: Bindings) -> str:
    """Fill {variable} placeholders; text with unknown placeholders is kept as written."""
    try:
        return template.format(**bindings)
    except (KeyError, IndexError, ValueError, AttributeError):
        return template


def _render_value(value: Any, bindings: Bindings) -> Any:
    if isinstance(value, str):
        return render_text(value, bindings)
    if isinstance(value, dict):
        return {k: _render_value(v, bindings) for k, v in value.items()}
    if isinstance(value, list):
        return [_render_value(v, bindings) for v in value]
    return value


def to_scalar(value: Any) -> Optional[Scalar]:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


_PATH_TOKEN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")


def resolve_path(data: Any, path: str) -> Any:
    """Resolve ``$.a.b[0].c`` (or ``a.b.0.c``) against decoded JSON; None when absent."""
    path = path.strip()
    if path.startswith("$"):
        path = path[1:]
    current = data
    for index, key in _PATH_TOKEN.findall(path):
        if index:
            if not isinstance(current, list) or int(index) >= len(current):
                return None
            current = current[int(index)]
        elif isinstance(current, dict):
            if key not in current:
                return None
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


def apply_response_mapping(
    bindings: Bindings, mapping: dict[str, str], data: Any
) -> Bindings:
    for json_path, variable_name in mapping.items():
        value = to_scalar(resolve_path(data, json_path))
        if value is not None:
            bindings[variable_name] = value
    return bindings


def find_start_node(doc: FlowDocument):
    starts = doc.start_nodes()
    return starts[0] if starts else None


def _first_edge(doc: FlowDocument, node_id: str) -> Optional[FlowEdge]:
    # Declaration order decides when a node has several outgoing edges.
    return next((e for e in doc.edges if e.source == node_id), None)


def _handle_edge(doc: FlowDocument, node_id: str, handle: str) -> Optional[FlowEdge]:
    return next(
        (e for e in doc.edges if e.source == node_id and e.source_handle == handle),
        None,
    )


def _follow(doc, node, bindings, effects) -> StepResult:
    edge = _first_edge(doc, node.id)
    if edge is None:
        effects.append(
            Effect(EffectType.DEAD_END, node.id, {"message": f"Node '{node.id}' has no outgoing edge"})
        )
        return StepResult(StepStatus.DEAD_END, node.id, None, bindings, effects)
    return StepResult(StepStatus.ADVANCED, node.id, edge.target, bindings, effects)


def _stall(node, bindings, handle: Optional[str]) -> StepResult:
    message = (
        f"Condition '{node.id}' has no edge for handle '{handle}'"
        if handle is not None
        else f"Condition '{node.id}' matched no connected output"
    )
    logger.info(message)
    effect = Effect(EffectType.STALLED, node.id, {"handle": handle, "message": message})
    return StepResult(StepStatus.STALLED, node.id, None, bindings, [effect])


def _trigger_allows(doc: FlowDocument, edge: FlowEdge, condition_id: str, handle: str) -> bool:
    target = doc.get_node(edge.target)
    if target is None or target.type != "question":
        return True
    triggers = target.data.condition_triggers or {}
    expected = triggers.get(condition_id)
    return expected is None or expected == handle


# ---------------------------------------------------------------------------
# node kinds
# ---------------------------------------------------------------------------


def _step_question(doc, node, bindings, value, skipped) -> StepResult:
    data = node.data
    if skipped:
        # optional questions leave no trace when skipped
        if data.variable_name and data.required:
            bindings[data.variable_name] = SKIPPED_PLACEHOLDER
        return _follow(doc, node, bindings, [])

    if value is None:
        ask = Effect(
            EffectType.ASK,
            node.id,
            {
                "text": render_text(data.prompt, bindings),
                "questionType": data.question_type,
                "options": [o.model_dump(by_alias=True, exclude_none=True) for o in data.options],
                "required": data.required,
                "variableName": data.variable_name,
            },
        )
        return StepResult(StepStatus.AWAITING_INPUT, node.id, node.id, bindings, [ask])

    if data.variable_name:
        bindings[data.variable_name] = value
    return _follow(doc, node, bindings, [])


def _step_condition(doc, node, bindings) -> StepResult:
    data = node.data
    if data.condition_type == "multi-output":
        for output in data.outputs:
            if not evaluate("and", output.rules, bindings):
                continue
            edge = _handle_edge(doc, node.id, output.value)
            if edge is None or not _trigger_allows(doc, edge, node.id, output.value):
                continue
            return StepResult(StepStatus.ADVANCED, node.id, edge.target, bindings, [])
        return _stall(node, bindings, None)

    handle = "true" if evaluate(data.combinator, data.rules, bindings) else "false"
    edge = _handle_edge(doc, node.id, handle)
    if edge is None or not _trigger_allows(doc, edge, node.id, handle):
        return _stall(node, bindings, handle)
    return StepResult(StepStatus.ADVANCED, node.id, edge.target, bindings, [])


def _deferred(doc, node, bindings, effect, effect_result, merge) -> StepResult:
    if effect_result is None:
        return StepResult(StepStatus.AWAITING_EFFECT, node.id, node.id, bindings, [effect])
    if not effect_result.ok:
        logger.warning(
            "Effect %s on node %s failed: %s", effect.type.value, node.id, effect_result.error
        )
        return StepResult(StepStatus.EFFECT_FAILED, node.id, node.id, bindings, [])
    merge(bindings, effect_result)
    return _follow(doc, node, bindings, [])


def _merge_bindings(bindings: Bindings, result: EffectResult) -> None:
    for name, value in result.bindings.items():
        scalar = to_scalar(value)
        if scalar is not None:
            bindings[name] = scalar


def _step_action(doc, node, bindings, effect_result) -> StepResult:
    data = node.data
    if data.kind == "set_variable":
        name = data.target_variable
        value = to_scalar(_render_value(data.params.get("value", ""), bindings))
        if name:
            bindings[name] = "" if value is None else value
        return _follow(doc, node, bindings, [])

    effect = Effect(
        EffectType(data.kind),
        node.id,
        {"kind": data.kind, "params": _render_value(data.params, bindings)},
    )
    return _deferred(doc, node, bindings, effect, effect_result, _merge_bindings)


def _step_wait(doc, node, bindings, effect_result) -> StepResult:
    data = node.data
    payload: dict[str, Any] = {"mode": data.mode}
    if data.duration_ms is not None:
        payload["durationMs"] = data.duration_ms
    if data.range_ms is not None:
        payload["rangeMs"] = list(data.range_ms)
    if data.until_timestamp is not None:
        payload["untilTimestamp"] = data.until_timestamp.isoformat()
    effect = Effect(EffectType.WAIT, node.id, payload)
    return _deferred(doc, node, bindings, effect, effect_result, _merge_bindings)


def _step_api_call(doc, node, bindings, effect_result) -> StepResult:
    data = node.data
    effect = Effect(
        EffectType.API_CALL,
        node.id,
        {
            "method": data.method.upper(),
            "url": render_text(data.url, bindings),
            "headers": _render_value(data.headers, bindings),
            "body": _render_value(data.body, bindings),
            "responseMapping": dict(data.response_mapping),
        },
    )

    def merge(b: Bindings, result: EffectResult) -> None:
        _merge_bindings(b, result)
        apply_response_mapping(b, data.response_mapping, result.data)

    return _deferred(doc, node, bindings, effect, effect_result, merge)


# ---------------------------------------------------------------------------
# public API
# ---------------------------------------------------------------------------


def step(
    doc: FlowDocument,
    current_node_id: str,
    bindings: Bindings,
    input: Optional[Scalar] = None,
    *,
    effect_result: Optional[EffectResult] = None,
    skipped: bool = False,
) -> StepResult:
    out: Bindings = dict(bindings)
    node = doc.get_node(current_node_id)
    if node is None:
        effect = Effect(
            EffectType.UNKNOWN_NODE,
            current_node_id,
            {"message": f"Node '{current_node_id}' does not exist in flow {doc.id}"},
        )
        return StepResult(StepStatus.UNKNOWN_NODE, current_node_id, None, out, [effect])

    if node.type == "end":
        return StepResult(StepStatus.COMPLETED, node.id, None, out, [])
    if node.type == "question":
        return _step_question(doc, node, out, input, skipped)
    if node.type == "condition":
        return _step_condition(doc, node, out)
    if node.type == "action":
        return _step_action(doc, node, out, effect_result)
    if node.type == "wait":
        return _step_wait(doc, node, out, effect_result)
    if node.type == "api-call":
        return _step_api_call(doc, node, out, effect_result)
    if node.type == "message":
        say = Effect(EffectType.SAY, node.id, {"text": render_text(node.data.content or node.data.label, out)})
        return _follow(doc, node, out, [say])
    # start
    return _follow(doc, node, out, [])


def advance(
    doc: FlowDocument,
    node_id: str,
    bindings: Bindings,
    input: Optional[Scalar] = None,
    *,
    effect_result: Optional[EffectResult] = None,
    skipped: bool = False,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> StepResult:
    """
    Step from node_id until the flow needs input, an effect, or stops.
    The returned result carries the effects of every node visited.
    """
    result = step(doc, node_id, bindings, input, effect_result=effect_result, skipped=skipped)
    effects = list(result.effects)
    steps = 1
    while result.status is StepStatus.ADVANCED:
        if steps >= max_steps:
            raise FlowLoopError(doc.id, result.next_node_id, max_steps)
        result = step(doc, result.next_node_id, result.bindings)
        effects.extend(result.effects)
        steps += 1
    return replace(result, effects=effects)
