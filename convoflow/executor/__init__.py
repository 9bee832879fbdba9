"""
Node Executor: static dispatch from node kind to handler.
"""

from typing import Dict, Optional

from convoflow.errors import FatalNodeError
from convoflow.executor.base import (
    ExecutionContext,
    NodeHandler,
    SendMessage,
    SetVariable,
    StepResult,
    Suspend,
    Transition,
)
from convoflow.executor.handlers import (
    CodeExecutionHandler,
    ConditionHandler,
    DataCaptureHandler,
    DelayHandler,
    HandoffHandler,
    MessageHandler,
    TriggerHandler,
    WebhookHandler,
)
from convoflow.executor.sandbox import Sandbox
from convoflow.executor.webhook import WebhookClient
from convoflow.graph import NodeKind


class NodeExecutor:
    def __init__(self, handlers: Dict[str, NodeHandler]):
        missing = {k.value for k in NodeKind} - set(handlers)
        if missing:
            raise ValueError(f"no handler registered for node kinds: {sorted(missing)}")
        self._handlers = dict(handlers)

    @classmethod
    def default(
        cls,
        webhook_client: Optional[WebhookClient] = None,
        sandbox: Optional[Sandbox] = None,
    ) -> "NodeExecutor":
        return cls({
            NodeKind.trigger.value: TriggerHandler(),
            NodeKind.message.value: MessageHandler(),
            NodeKind.condition.value: ConditionHandler(),
            NodeKind.data_capture.value: DataCaptureHandler(),
            NodeKind.code_execution.value: CodeExecutionHandler(sandbox),
            NodeKind.delay.value: DelayHandler(),
            NodeKind.handoff.value: HandoffHandler(),
            NodeKind.webhook.value: WebhookHandler(webhook_client),
        })

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        handler = self._handlers.get(node.kind)
        if handler is None:
            raise FatalNodeError(f"unsupported node kind '{node.kind}'", node_id=node.id)
        return handler.execute(node, ctx)


__all__ = [
    "NodeExecutor", "NodeHandler", "ExecutionContext",
    "Transition", "Suspend", "StepResult", "SendMessage", "SetVariable",
]
