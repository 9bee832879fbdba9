# tests/test_webhook.py
import json

import httpx
import pytest

from convoflow.errors import FatalNodeError, TransientExternalError
from convoflow.executor.retry import call_with_retry
from convoflow.models import SessionStatus, StepStatus


def _hook_flow(**config):
    return {
        "nodes": [
            {"id": "start", "kind": "trigger"},
            {"id": "hook", "kind": "webhook", "config": {"url": "https://hooks.test/orders/{{order_id}}", **config}},
            {"id": "done", "kind": "message", "config": {"content": "order is {{webhook_response.body.state}}"}},
        ],
        "edges": [{"source": "start", "target": "hook"}, {"source": "hook", "target": "done"}],
    }


def test_retry_backs_off_exponentially():
    sleeps = []
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientExternalError("blip")
        return "ok"

    result, attempts = call_with_retry(flaky, max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)
    assert (result, attempts) == ("ok", 3)
    assert sleeps == [0.5, 1.0]


def test_retry_gives_up_with_the_attempt_count():
    def down():
        raise TransientExternalError("down")

    with pytest.raises(FatalNodeError) as err:
        call_with_retry(down, max_attempts=2, backoff_seconds=0, node_id="hook", sleep=lambda _: None)
    assert err.value.attempts == 2
    assert err.value.node_id == "hook"


def test_response_is_stored_as_a_variable(make_flow_engine, publish, mock_webhook, channel):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"state": "shipped"})

    engine = make_flow_engine(webhook_client=mock_webhook(handler))
    flow = publish(_hook_flow(body={"order": "{{order_id}}", "qty": "{{qty}}"}), engine=engine)
    session = engine.sessions.start_session(
        flow_id=flow.id, conversation_id=1, contact_id=1, trigger_node_id="start",
        payload={"order_id": "A1", "qty": 2},
    )

    assert session.status == SessionStatus.completed
    assert str(seen[0].url) == "https://hooks.test/orders/A1"
    assert json.loads(seen[0].content) == {"order": "A1", "qty": 2}
    assert engine.variables.get(session, "webhook_response") == {"status": 200, "body": {"state": "shipped"}}
    assert channel.contents() == ["order is shipped"]


def test_client_errors_are_not_retried(make_flow_engine, publish, mock_webhook):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, json={"error": "nope"})

    engine = make_flow_engine(webhook_client=mock_webhook(handler, sleep=lambda _: None))
    flow = publish(_hook_flow(), engine=engine)
    session = engine.sessions.start_session(flow_id=flow.id, conversation_id=1, contact_id=1, trigger_node_id="start")

    assert len(calls) == 1
    assert session.status == SessionStatus.paused
    assert "404" in session.last_error_message


def test_server_errors_are_retried(make_flow_engine, publish, mock_webhook):
    replies = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"state": "new"})])
    engine = make_flow_engine(webhook_client=mock_webhook(lambda request: next(replies), sleep=lambda _: None))
    flow = publish(_hook_flow(max_attempts=3), engine=engine)
    session = engine.sessions.start_session(flow_id=flow.id, conversation_id=1, contact_id=1, trigger_node_id="start")

    assert session.status == SessionStatus.completed
    hook = [s for s in engine.tracker.list_steps(session.session_id) if s.node_id == "hook"][0]
    assert hook.attempts == 3
    assert hook.output["status"] == 200


def test_timeouts_on_every_attempt_pause_the_session(make_flow_engine, publish, mock_webhook):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    engine = make_flow_engine(webhook_client=mock_webhook(handler))
    flow = publish(_hook_flow(max_attempts=3, backoff_seconds=0.05, timeout_seconds=1), engine=engine)
    session = engine.sessions.start_session(flow_id=flow.id, conversation_id=1, contact_id=1, trigger_node_id="start")

    assert len(calls) == 3
    assert session.status == SessionStatus.paused
    assert session.last_error_node_id == "hook"

    hook = [s for s in engine.tracker.list_steps(session.session_id) if s.node_id == "hook"][0]
    assert hook.status == StepStatus.failed
    assert hook.attempts == 3
    # backoffs are 0.05s then 0.1s
    assert hook.duration_ms >= 150
    assert "gave up after 3 attempts" in hook.error_message
