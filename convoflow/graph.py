"""
Typed flow graph.

A flow definition is ``{"nodes": [...], "edges": [...]}``. Every node carries a
``kind`` and a ``config`` payload whose shape depends on the kind; the set of
kinds is closed and parsed into one pydantic model per kind, so the executor
never inspects raw dictionaries.
"""

import re
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from convoflow.errors import FlowValidationError
from convoflow.models.variable import VariableScope


class NodeKind(str, Enum):
    trigger = "trigger"
    message = "message"
    condition = "condition"
    data_capture = "data_capture"
    code_execution = "code_execution"
    delay = "delay"
    handoff = "handoff"
    webhook = "webhook"


OPERATOR_ALIASES = {
    "==": "equals", "eq": "equals", "is": "equals",
    "!=": "not_equals", "ne": "not_equals",
    ">": "gt", "greater_than": "gt",
    ">=": "gte", "greater_or_equal": "gte",
    "<": "lt", "less_than": "lt",
    "<=": "lte", "less_or_equal": "lte",
    "matches": "regex",
    "startswith": "starts_with", "endswith": "ends_with",
    "is_empty": "not_exists", "is_not_empty": "exists",
}

OPERATORS = frozenset({
    "equals", "not_equals", "contains", "not_contains", "starts_with", "ends_with",
    "gt", "gte", "lt", "lte", "exists", "not_exists", "regex", "in", "not_in",
})


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _compile(pattern: Any) -> None:
    try:
        re.compile(str(pattern))
    except re.error as exc:
        raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

class Predicate(_Strict):
    variable: str
    operator: str = "equals"
    value: Any = None
    case_sensitive: bool = False

    @field_validator("operator")
    @classmethod
    def _normalize_operator(cls, v: str) -> str:
        op = OPERATOR_ALIASES.get(v.strip().lower(), v.strip().lower())
        if op not in OPERATORS:
            raise ValueError(f"unknown operator '{v}'")
        return op

    @model_validator(mode="after")
    def _check_pattern(self) -> "Predicate":
        if self.operator == "regex":
            _compile(self.value)
        return self


class Edge(_Strict):
    id: Optional[str] = None
    source: str
    target: str
    label: Optional[str] = None
    conditions: List[Predicate] = Field(default_factory=list)
    match: Literal["all", "any"] = "all"
    default: bool = False

    @model_validator(mode="before")
    @classmethod
    def _single_condition(cls, data: Any) -> Any:
        # builder shorthand: {"condition": {...}} for a single predicate
        if isinstance(data, dict) and "condition" in data:
            data = dict(data)
            single = data.pop("condition")
            if single:
                data["conditions"] = [single, *data.get("conditions", [])]
        return data

    @property
    def guarded(self) -> bool:
        return bool(self.conditions)


# ---------------------------------------------------------------------------
# Node payloads
# ---------------------------------------------------------------------------

class TriggerConfig(_Strict):
    channel_types: List[str] = Field(default_factory=list)  # empty = any channel
    condition_type: Literal["any", "contains", "exact", "regex"] = "any"
    condition_value: str = ""  # comma separated keywords, or a regex
    case_sensitive: bool = False
    session_timeout_minutes: Optional[float] = None

    @model_validator(mode="after")
    def _check_pattern(self) -> "TriggerConfig":
        if self.condition_type == "regex":
            _compile(self.condition_value)
        return self


class MessageConfig(_Strict):
    content: str = ""
    message_type: str = "text"
    media_url: Optional[str] = None


class ConditionConfig(_Strict):
    # branches live on the outgoing edges
    description: Optional[str] = None


class CaptureField(_Strict):
    name: str
    type: Literal["string", "number", "boolean", "email", "phone", "any"] = "string"
    required: bool = True
    source: Literal["payload", "message"] = "payload"
    source_path: Optional[str] = None  # dotted path inside the payload, defaults to `name`
    pattern: Optional[str] = None  # regex applied to the text; group 1 (or the match) is captured
    prompt: Optional[str] = None
    scope: Optional[VariableScope] = None

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            _compile(v)
        return v


class DataCaptureConfig(_Strict):
    fields: List[CaptureField] = Field(min_length=1)
    storage_scope: VariableScope = VariableScope.session
    overwrite_existing: bool = True
    prompt: Optional[str] = None


class CodeExecutionConfig(_Strict):
    code: str
    input_variables: List[str] = Field(default_factory=list)  # empty = every visible variable
    output_variables: List[str] = Field(default_factory=list)
    output_scope: VariableScope = VariableScope.session
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    memory_mb: Optional[int] = Field(default=None, gt=0)
    max_attempts: int = Field(default=1, ge=1, le=10)


class DelayConfig(_Strict):
    seconds: float = Field(default=0, ge=0)
    until: Optional[datetime] = None
    event: Optional[str] = None

    @model_validator(mode="after")
    def _has_wake_up(self) -> "DelayConfig":
        if not self.seconds and self.until is None and not self.event:
            raise ValueError("delay needs 'seconds', 'until' or 'event'")
        return self


class HandoffConfig(_Strict):
    message: str = ""
    assign_to: Optional[str] = None
    notify_agent: bool = True


class WebhookConfig(_Strict):
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)
    backoff_seconds: Optional[float] = Field(default=None, ge=0)
    response_variable: Optional[str] = "webhook_response"
    response_scope: VariableScope = VariableScope.session


# ---------------------------------------------------------------------------
# Nodes (one variant per kind)
# ---------------------------------------------------------------------------

class _NodeBase(_Strict):
    id: str
    label: Optional[str] = None


class TriggerNode(_NodeBase):
    kind: Literal["trigger"] = "trigger"
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class MessageNode(_NodeBase):
    kind: Literal["message"] = "message"
    config: MessageConfig = Field(default_factory=MessageConfig)


class ConditionNode(_NodeBase):
    kind: Literal["condition"] = "condition"
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class DataCaptureNode(_NodeBase):
    kind: Literal["data_capture"] = "data_capture"
    config: DataCaptureConfig


class CodeExecutionNode(_NodeBase):
    kind: Literal["code_execution"] = "code_execution"
    config: CodeExecutionConfig


class DelayNode(_NodeBase):
    kind: Literal["delay"] = "delay"
    config: DelayConfig


class HandoffNode(_NodeBase):
    kind: Literal["handoff"] = "handoff"
    config: HandoffConfig = Field(default_factory=HandoffConfig)


class WebhookNode(_NodeBase):
    kind: Literal["webhook"] = "webhook"
    config: WebhookConfig


Node = Annotated[
    Union[
        TriggerNode, MessageNode, ConditionNode, DataCaptureNode,
        CodeExecutionNode, DelayNode, HandoffNode, WebhookNode,
    ],
    Field(discriminator="kind"),
]


class FlowGraph(_Strict):
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_structure(self) -> "FlowGraph":
        ids = [n.id for n in self.nodes]
        seen = set()
        for node_id in ids:
            if node_id in seen:
                raise ValueError(f"duplicate node id '{node_id}'")
            seen.add(node_id)

        defaults: Dict[str, int] = {}
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in seen:
                    raise ValueError(f"edge {edge.source}->{edge.target} references unknown node '{end}'")
            if edge.default:
                defaults[edge.source] = defaults.get(edge.source, 0) + 1
                if edge.guarded:
                    raise ValueError(f"default edge {edge.source}->{edge.target} cannot carry conditions")
        for source, count in defaults.items():
            if count > 1:
                raise ValueError(f"node '{source}' declares {count} default edges")

        for node in self.nodes:
            if node.kind == NodeKind.condition and not self.outgoing(node.id):
                raise ValueError(f"condition node '{node.id}' has no outgoing edges")

        if self.nodes and not self.entry_nodes():
            raise ValueError("flow has no entry node (add a trigger or a node without incoming edges)")
        return self

    # -- lookups ------------------------------------------------------------

    def get(self, node_id: Optional[str]):
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        """Outgoing edges in definition order."""
        return [e for e in self.edges if e.source == node_id]

    def trigger_nodes(self) -> list:
        return [n for n in self.nodes if n.kind == NodeKind.trigger]

    def entry_nodes(self) -> list:
        triggers = self.trigger_nodes()
        if triggers:
            return triggers
        targets = {e.target for e in self.edges}
        return [n for n in self.nodes if n.id not in targets]

    def reachable_from(self, node_ids: Iterable[str]) -> set:
        seen = set()
        queue = deque(n for n in node_ids if n is not None)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(e.target for e in self.outgoing(current))
        return seen


def parse_graph(raw: Dict[str, Any]) -> FlowGraph:
    """Parse and validate a raw graph, raising FlowValidationError with per-field details."""
    try:
        return FlowGraph.model_validate(raw or {})
    except ValidationError as exc:
        details = [
            {"path": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in exc.errors()
        ]
        raise FlowValidationError("invalid flow graph", details=details) from exc
