# tests/test_tracker.py
from convoflow.graph import parse_graph
from convoflow.models import FlowSession, SessionStatus
from convoflow.services.tracker import completion_rate

LINEAR = parse_graph({
    "nodes": [{"id": n, "kind": "message"} for n in ("a", "b", "c", "d")],
    "edges": [
        {"source": "a", "target": "b"},
        {"source": "b", "target": "c"},
        {"source": "c", "target": "d"},
    ],
})


def _session(status, path, cursor):
    return FlowSession(
        session_id="fs_t", flow_id=1, flow_version_id=1, conversation_id=1, contact_id=1,
        trigger_node_id="a", status=status, execution_path=path, current_node_id=cursor,
    )


def test_completed_session_counts_only_its_path():
    session = _session(SessionStatus.completed, ["a", "b"], "b")
    assert completion_rate(LINEAR, session, {"a", "b"}) == 1.0


def test_unfinished_session_counts_what_is_left():
    session = _session(SessionStatus.timeout, ["a", "b"], "b")
    # required = a, b, c, d; b never finished
    assert completion_rate(LINEAR, session, {"a"}) == 0.25


def test_rate_is_capped_and_empty_paths_are_zero():
    assert completion_rate(LINEAR, _session(SessionStatus.completed, ["a"], "a"), {"a", "b", "c"}) == 1.0
    assert completion_rate(LINEAR, _session(SessionStatus.cancelled, [], None), set()) == 0.0


def test_dropoff_report_counts_every_session(flow_engine, publish):
    graph = {
        "nodes": [
            {"id": "check", "kind": "condition"},
            {"id": "yes", "kind": "message", "config": {"content": "yes"}},
            {"id": "no", "kind": "message", "config": {"content": "no"}},
        ],
        "edges": [
            {"source": "check", "target": "yes", "condition": {"variable": "ok", "operator": "equals", "value": True}},
            {"source": "check", "target": "no", "default": True},
        ],
    }
    flow = publish(graph)
    for conversation_id, ok in enumerate([True, True, False, True]):
        flow_engine.sessions.start_session(
            flow_id=flow.id, conversation_id=conversation_id, contact_id=1, trigger_node_id="check",
            company_id=1, payload={"ok": ok},
        )

    report = {row["node_id"]: row for row in flow_engine.tracker.dropoff_report(flow.id)}
    assert report["check"]["completed"] == 4 and report["check"]["dropoff_rate"] == 0.0
    assert report["yes"] == {
        "node_id": "yes", "total": 4, "completed": 3, "failed": 0, "skipped": 1, "waiting": 0, "dropoff_rate": 0.25,
    }
    assert report["no"]["skipped"] == 3
    assert flow_engine.tracker.dropoff(flow.id, "no") == 0.75
    assert flow_engine.tracker.dropoff(flow.id, "nowhere") == 0.0
    assert flow_engine.tracker.dropoff_report(flow.id, company_id=2) == []
