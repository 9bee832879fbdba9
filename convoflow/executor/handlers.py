"""
One handler per node kind.

Every handler ends with the same edge rule (``_follow``): the first matching
outgoing edge in definition order, then the default edge. A node without
outgoing edges finishes the flow; a node whose edges all fail to match raises
FlowError.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from convoflow.errors import FatalNodeError, FlowError
from convoflow.executor.base import (
    ExecutionContext,
    NodeHandler,
    SendMessage,
    SetVariable,
    StepResult,
    Suspend,
    Transition,
)
from convoflow.executor.conditions import select_edge
from convoflow.executor.retry import call_with_retry
from convoflow.executor.sandbox import Sandbox
from convoflow.executor.webhook import WebhookClient
from convoflow.graph import CaptureField
from convoflow.templating import lookup

EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE = re.compile(r"^\+?[\d\s\-().]{7,20}$")
TRUTHY = {"true", "yes", "y", "1", "si", "sí", "ok"}
FALSY = {"false", "no", "n", "0"}


def _follow(ctx: ExecutionContext, node_id: str, extra: Optional[Dict[str, Any]] = None, **kwargs) -> Transition:
    variables = dict(ctx.variables)
    if extra:
        variables.update(extra)
    edges = ctx.graph.outgoing(node_id)
    if not edges:
        return Transition(next_node_id=None, **kwargs)
    taken, not_taken = select_edge(ctx.graph, node_id, variables)
    if taken is None:
        raise FlowError(f"no outgoing edge of '{node_id}' matched and no default edge is declared", node_id=node_id)
    output = kwargs.pop("output", {})
    output.setdefault("edge", {"target": taken.target, "label": taken.label, "default": taken.default})
    return Transition(next_node_id=taken.target, output=output, skipped=not_taken, **kwargs)


class TriggerHandler(NodeHandler):
    kind = "trigger"

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        return _follow(ctx, node.id, output={"message": ctx.message_text()})


class MessageHandler(NodeHandler):
    kind = "message"

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        cfg = node.config
        content = ctx.render(cfg.content)
        media_url = ctx.render(cfg.media_url) if cfg.media_url else None
        send = SendMessage(content=content, message_type=cfg.message_type, media_url=media_url)
        return _follow(ctx, node.id, output={"content": content}, side_effects=[send])


class ConditionHandler(NodeHandler):
    kind = "condition"

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        return _follow(ctx, node.id)


class DataCaptureHandler(NodeHandler):
    """
    Pulls each declared field out of the inbound payload (or message text),
    coerces it to the field type and stores it. While a required field is
    missing or invalid the step suspends, re-sending the prompt.
    """

    kind = "data_capture"

    @staticmethod
    def _coerce(field: CaptureField, raw: Any) -> Tuple[bool, Any]:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return False, None
        if field.type == "any":
            return True, raw
        if field.type == "number":
            if isinstance(raw, bool):
                return False, None
            if isinstance(raw, (int, float)):
                return True, raw
            try:
                number = float(str(raw).strip())
            except ValueError:
                return False, None
            return True, int(number) if number.is_integer() else number
        if field.type == "boolean":
            if isinstance(raw, bool):
                return True, raw
            text = str(raw).strip().casefold()
            if text in TRUTHY:
                return True, True
            if text in FALSY:
                return True, False
            return False, None
        text = raw.strip() if isinstance(raw, str) else raw
        if field.type == "email":
            return (True, text) if isinstance(text, str) and EMAIL.match(text) else (False, None)
        if field.type == "phone":
            return (True, text) if isinstance(text, str) and PHONE.match(text) else (False, None)
        return True, text if isinstance(text, str) else str(text)

    @staticmethod
    def _extract(field: CaptureField, ctx: ExecutionContext) -> Any:
        if not ctx.inbound:
            return None
        if field.source == "message":
            raw = ctx.message_text()
        else:
            raw = lookup(ctx.inbound, field.source_path or field.name)
        if field.pattern and raw is not None:
            match = re.search(field.pattern, str(raw))
            if not match:
                return None
            raw = match.group(1) if match.groups() else match.group(0)
        return raw

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        cfg = node.config
        effects: List[Any] = []
        captured: Dict[str, Any] = {}
        missing: List[CaptureField] = []

        for field in cfg.fields:
            scope = field.scope or cfg.storage_scope
            existing = ctx.variables.get(field.name)
            if existing is not None and not cfg.overwrite_existing:
                captured[field.name] = existing
                continue
            ok, value = self._coerce(field, self._extract(field, ctx))
            if ok:
                captured[field.name] = value
                effects.append(SetVariable(key=field.name, value=value, scope=scope))
            elif existing is not None:
                captured[field.name] = existing
            elif field.required:
                missing.append(field)

        if missing:
            prompt = missing[0].prompt or cfg.prompt
            if prompt:
                effects.append(SendMessage(content=ctx.render(prompt)))
            return Suspend(
                reason="awaiting_input",
                resume_condition={"type": "input", "fields": [f.name for f in missing]},
                side_effects=effects,
                output={"captured": captured, "missing": [f.name for f in missing]},
            )
        return _follow(ctx, node.id, extra=captured, output={"captured": captured}, side_effects=effects)


class CodeExecutionHandler(NodeHandler):
    kind = "code_execution"

    def __init__(self, sandbox: Optional[Sandbox] = None):
        self.sandbox = sandbox or Sandbox()

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        cfg = node.config
        if cfg.input_variables:
            inputs = {name: lookup(ctx.variables, name) for name in cfg.input_variables}
        else:
            inputs = dict(ctx.variables)

        result, attempts = call_with_retry(
            lambda: self.sandbox.run(
                cfg.code, inputs, cfg.output_variables,
                timeout_seconds=cfg.timeout_seconds, memory_mb=cfg.memory_mb,
            ),
            max_attempts=cfg.max_attempts,
            backoff_seconds=0,
            node_id=node.id,
        )
        effects = [SetVariable(key=k, value=v, scope=cfg.output_scope) for k, v in result.outputs.items()]
        return _follow(
            ctx, node.id, extra=result.outputs,
            output={"outputs": result.outputs, "stdout": result.stdout},
            side_effects=effects, attempts=attempts,
        )


class DelayHandler(NodeHandler):
    """Suspends until a deadline or a named event; re-entry before either re-suspends."""

    kind = "delay"

    @staticmethod
    def _deadline(cfg, now: datetime) -> Optional[datetime]:
        if cfg.until is not None:
            until = cfg.until
            if until.tzinfo is not None:
                until = (until - until.utcoffset()).replace(tzinfo=None)
            return until
        if cfg.seconds:
            return now + timedelta(seconds=cfg.seconds)
        return None

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        cfg = node.config
        if ctx.resuming:
            condition = (ctx.waiting_context or {}).get("resume_condition") or {}
            deadline_raw = condition.get("resume_at")
            deadline = datetime.fromisoformat(deadline_raw) if deadline_raw else None
            event = (ctx.inbound or {}).get("event")
            if cfg.event and event == cfg.event:
                return _follow(ctx, node.id, output={"woken_by": "event", "event": event})
            if deadline is not None and ctx.now >= deadline:
                return _follow(ctx, node.id, output={"woken_by": "timer"})
        else:
            deadline = self._deadline(cfg, ctx.now)

        condition: Dict[str, Any] = {"type": "event" if cfg.event and deadline is None else "timer"}
        if deadline is not None:
            condition["resume_at"] = deadline.isoformat()
        if cfg.event:
            condition["event"] = cfg.event
        return Suspend(reason="delay", resume_condition=condition, resume_at=deadline)


class HandoffHandler(NodeHandler):
    kind = "handoff"

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        cfg = node.config
        metadata = {"assign_to": cfg.assign_to, "notify_agent": cfg.notify_agent, "node_id": node.id}
        send = SendMessage(content=ctx.render(cfg.message), message_type="handoff", metadata=metadata)
        return Transition(next_node_id=None, output={"handoff": metadata}, side_effects=[send], end=True)


class WebhookHandler(NodeHandler):
    kind = "webhook"

    def __init__(self, client: Optional[WebhookClient] = None):
        self.client = client or WebhookClient()

    def execute(self, node, ctx: ExecutionContext) -> StepResult:
        cfg = node.config
        url = ctx.render(cfg.url)
        headers = {k: ctx.render(v) for k, v in cfg.headers.items()}
        body = ctx.render_data(cfg.body)
        try:
            response = self.client.send(
                cfg.method, url, headers=headers, body=body,
                timeout=cfg.timeout_seconds, max_attempts=cfg.max_attempts,
                backoff_seconds=cfg.backoff_seconds, node_id=node.id,
            )
        except FatalNodeError as exc:
            exc.node_id = exc.node_id or node.id
            raise

        effects = []
        extra = {}
        if cfg.response_variable:
            effects.append(SetVariable(key=cfg.response_variable, value=response.as_variable(), scope=cfg.response_scope))
            extra[cfg.response_variable] = response.as_variable()
        return _follow(
            ctx, node.id, extra=extra,
            output={"status": response.status, "attempts": response.attempts},
            side_effects=effects, attempts=response.attempts,
        )
