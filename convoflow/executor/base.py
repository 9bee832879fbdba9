"""
Handler contract for node execution.

A handler receives the node plus an ``ExecutionContext`` (a read-only
variable snapshot and the event that woke the session) and returns either a
``Transition`` or a ``Suspend``. Handlers never write to the database or talk
to a channel themselves; the side effects they return are applied by the
session manager in the same transaction that records the step.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from convoflow import templating
from convoflow.graph import Edge, FlowGraph
from convoflow.models import FlowSession, VariableScope


# ---------------------------------------------------------------------------
# Side effects
# ---------------------------------------------------------------------------

@dataclass
class SendMessage:
    content: str
    message_type: str = "text"
    media_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SetVariable:
    key: str
    value: Any
    scope: VariableScope = VariableScope.session
    ttl_seconds: Optional[float] = None
    encrypted: bool = False


SideEffect = Union[SendMessage, SetVariable]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class Transition:
    """Step finished. ``next_node_id`` None (or ``end``) finishes the flow."""

    next_node_id: Optional[str]
    output: Dict[str, Any] = field(default_factory=dict)
    side_effects: List[SideEffect] = field(default_factory=list)
    # outgoing edges that were evaluated but not taken
    skipped: List[Edge] = field(default_factory=list)
    attempts: int = 1
    end: bool = False


@dataclass
class Suspend:
    """Step is waiting for input, a timer or an external event."""

    reason: str
    resume_condition: Dict[str, Any] = field(default_factory=dict)
    side_effects: List[SideEffect] = field(default_factory=list)
    resume_at: Optional[datetime] = None
    output: Dict[str, Any] = field(default_factory=dict)


StepResult = Union[Transition, Suspend]


@dataclass
class ExecutionContext:
    session: FlowSession
    graph: FlowGraph
    variables: Dict[str, Any]
    now: datetime
    # payload of the inbound event (or resume input) that woke the session;
    # None when the step is reached by an automatic transition
    inbound: Optional[Dict[str, Any]] = None
    # what the step was waiting for when it suspended, if this is a re-entry
    waiting_context: Optional[Dict[str, Any]] = None

    @property
    def resuming(self) -> bool:
        return self.waiting_context is not None

    def render(self, template: Optional[str]) -> str:
        return templating.render(template or "", self.variables)

    def render_data(self, data: Any) -> Any:
        return templating.render_data(data, self.variables)

    def message_text(self) -> str:
        if not self.inbound:
            return ""
        text = self.inbound.get("text", self.inbound.get("message", ""))
        return "" if text is None else str(text)


class NodeHandler(ABC):
    """Base class for one node kind."""

    kind: str = ""

    @abstractmethod
    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        """Run the node against the context."""
        pass
