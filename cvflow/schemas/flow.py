"""
Flow document model.

A flow is the graph authored in the visual designer: typed nodes, directed
edges, declared variables and editor settings. JSON is the wire format for
storage and for import/export, so every model keeps the designer's camelCase
keys (via aliases) and any extra keys it does not know about.
"""

from __future__ import annotations

import datetime as dt
import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    model_validator,
)

Scalar = Union[str, int, float, bool]
Bindings = dict[str, Scalar]

NodeType = Literal[
    "start", "message", "question", "condition", "action", "wait", "api-call", "end"
]
ActionKind = Literal["set_variable", "send_email", "send_sms", "call_api_side_effect"]
WaitMode = Literal["fixed", "random", "until"]

# Designer-era action names that mean "call an external endpoint"
_LEGACY_ACTION_KINDS = {
    "call_api": "call_api_side_effect",
    "send_webhook": "call_api_side_effect",
}


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class FlowModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @classmethod
    def lift(cls, values: Any) -> Any:
        """Flatten designer-nested keys into the flat form; a no-op unless overridden."""
        return values


def _lift_nested(values: Any, key: str, renames: dict[str, str]) -> Any:
    """Flatten the designer's nested form (e.g. data.wait.{...}) into data itself."""
    if not isinstance(values, dict) or not isinstance(values.get(key), dict):
        return values
    values = dict(values)
    nested = values.pop(key)
    for src, value in nested.items():
        values.setdefault(renames.get(src, src), value)
    return values


class Position(FlowModel):
    x: float = 0
    y: float = 0


class Option(FlowModel):
    id: str
    label: str
    value: str
    next_node_id: Optional[str] = Field(default=None, alias="nextNodeId")


class Rule(FlowModel):
    id: Optional[str] = None
    field: str
    operator: str
    value: Scalar = ""


class ConditionOutput(FlowModel):
    id: str
    label: str = ""
    value: str
    description: Optional[str] = None
    color: Optional[str] = None
    rules: list[Rule] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Node payloads
# ---------------------------------------------------------------------------


class StartData(FlowModel):
    label: str = "Start"
    description: Optional[str] = None


class MessageData(FlowModel):
    label: str = ""
    content: str = Field(default="", validation_alias=AliasChoices("content", "text"))


class QuestionData(FlowModel):
    label: str = ""
    text: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("text", "question")
    )
    question_type: str = Field(default="text", alias="questionType")
    options: list[Option] = Field(default_factory=list)
    required: bool = False
    variable_name: Optional[str] = Field(default=None, alias="variableName")
    # condition node id -> handle this question expects to be reached through
    condition_triggers: Optional[dict[str, str]] = Field(
        default=None, alias="conditionTriggers"
    )

    @property
    def prompt(self) -> str:
        return self.text or self.label or "Please provide your answer."


class ConditionData(FlowModel):
    label: str = ""
    combinator: str = Field(
        default="and", validation_alias=AliasChoices("combinator", "operator")
    )
    rules: list[Rule] = Field(default_factory=list)
    condition_type: Literal["simple", "multi-output"] = Field(
        default="simple", alias="conditionType"
    )
    outputs: list[ConditionOutput] = Field(default_factory=list)

    @classmethod
    def lift(cls, values: Any) -> Any:
        return _lift_nested(values, "condition", {"operator": "combinator"})

    @model_validator(mode="before")
    @classmethod
    def _lift_condition(cls, values: Any) -> Any:
        return cls.lift(values)


class ActionData(FlowModel):
    label: str = ""
    kind: ActionKind = Field(
        default="set_variable", validation_alias=AliasChoices("kind", "type")
    )
    params: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("params", "config")
    )

    @classmethod
    def lift(cls, values: Any) -> Any:
        values = _lift_nested(values, "action", {"type": "kind", "config": "params"})
        if isinstance(values, dict):
            for key in ("kind", "type"):
                if values.get(key) in _LEGACY_ACTION_KINDS:
                    values = {**values, key: _LEGACY_ACTION_KINDS[values[key]]}
        return values

    @model_validator(mode="before")
    @classmethod
    def _lift_action(cls, values: Any) -> Any:
        return cls.lift(values)

    @property
    def target_variable(self) -> Optional[str]:
        """Variable written by a set_variable action."""
        params = self.params
        return params.get("variableName") or params.get("variable") or params.get("name")


class WaitData(FlowModel):
    label: str = ""
    mode: WaitMode = "fixed"
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")
    range_ms: Optional[tuple[int, int]] = Field(default=None, alias="rangeMs")
    until_timestamp: Optional[dt.datetime] = Field(default=None, alias="untilTimestamp")

    @classmethod
    def lift(cls, values: Any) -> Any:
        if not isinstance(values, dict) or not isinstance(values.get("wait"), dict):
            return values
        values = dict(values)
        nested = values.pop("wait")
        mode = {"until_time": "until"}.get(nested.get("type"), nested.get("type"))
        if mode:
            values.setdefault("mode", mode)
        if nested.get("duration") is not None:
            values.setdefault("durationMs", nested["duration"])
        if nested.get("minDuration") is not None and nested.get("maxDuration") is not None:
            values.setdefault("rangeMs", [nested["minDuration"], nested["maxDuration"]])
        if nested.get("targetTime"):
            values.setdefault("untilTimestamp", nested["targetTime"])
        return values

    @model_validator(mode="before")
    @classmethod
    def _lift_wait(cls, values: Any) -> Any:
        return cls.lift(values)


class ApiCallData(FlowModel):
    label: str = ""
    method: str = "GET"
    url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    response_mapping: dict[str, str] = Field(default_factory=dict, alias="responseMapping")

    @classmethod
    def lift(cls, values: Any) -> Any:
        return _lift_nested(values, "apiCall", {})

    @model_validator(mode="before")
    @classmethod
    def _lift_api_call(cls, values: Any) -> Any:
        return cls.lift(values)


class EndData(FlowModel):
    label: str = "End"


# ---------------------------------------------------------------------------
# Nodes, edges, document
# ---------------------------------------------------------------------------


class _NodeBase(FlowModel):
    id: str
    position: Position = Field(default_factory=Position)
    style: Optional[dict[str, Any]] = None


class StartNode(_NodeBase):
    type: Literal["start"] = "start"
    data: StartData = Field(default_factory=StartData)


class MessageNode(_NodeBase):
    type: Literal["message"] = "message"
    data: MessageData = Field(default_factory=MessageData)


class QuestionNode(_NodeBase):
    type: Literal["question"] = "question"
    data: QuestionData = Field(default_factory=QuestionData)


class ConditionNode(_NodeBase):
    type: Literal["condition"] = "condition"
    data: ConditionData = Field(default_factory=ConditionData)


class ActionNode(_NodeBase):
    type: Literal["action"] = "action"
    data: ActionData = Field(default_factory=ActionData)


class WaitNode(_NodeBase):
    type: Literal["wait"] = "wait"
    data: WaitData = Field(default_factory=WaitData)


class ApiCallNode(_NodeBase):
    type: Literal["api-call"] = "api-call"
    data: ApiCallData = Field(default_factory=ApiCallData)


class EndNode(_NodeBase):
    type: Literal["end"] = "end"
    data: EndData = Field(default_factory=EndData)


FlowNode = Annotated[
    Union[
        StartNode,
        MessageNode,
        QuestionNode,
        ConditionNode,
        ActionNode,
        WaitNode,
        ApiCallNode,
        EndNode,
    ],
    Field(discriminator="type"),
]

node_adapter: TypeAdapter = TypeAdapter(FlowNode)


class FlowEdge(FlowModel):
    id: str
    source: str
    target: str
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle")
    target_handle: Optional[str] = Field(default=None, alias="targetHandle")
    label: Optional[str] = None
    style: Optional[dict[str, Any]] = None


class VariableDecl(FlowModel):
    id: str
    name: str
    type: Literal["string", "number", "boolean", "array", "object"] = "string"
    default_value: Any = Field(default=None, alias="defaultValue")
    scope: Literal["global", "local"] = "global"
    description: Optional[str] = None


class FlowSettings(FlowModel):
    auto_save: bool = Field(default=True, alias="autoSave")
    auto_save_interval: int = Field(default=30000, alias="autoSaveInterval")
    snap_to_grid: bool = Field(default=True, alias="snapToGrid")
    grid_size: int = Field(default=20, alias="gridSize")
    show_minimap: bool = Field(default=True, alias="showMinimap")
    show_controls: bool = Field(default=True, alias="showControls")
    theme: Literal["light", "dark"] = "light"


class FlowDocument(FlowModel):
    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)
    variables: list[VariableDecl] = Field(default_factory=list)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    created_at: dt.datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: dt.datetime = Field(default_factory=utcnow, alias="updatedAt")
    metadata: Optional[dict[str, Any]] = None

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        # First match in document order, like Array.find on the designer side.
        return next((n for n in self.nodes if n.id == node_id), None)

    def get_edge(self, edge_id: str) -> Optional[FlowEdge]:
        return next((e for e in self.edges if e.id == edge_id), None)

    def outgoing_edges(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming_edges(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.target == node_id]

    def start_nodes(self) -> list[StartNode]:
        return [n for n in self.nodes if n.type == "start"]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "FlowDocument":
        return cls.model_validate_json(raw)
