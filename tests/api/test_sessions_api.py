import os

import pytest

from convoflow.services.variables import ValueCipher

SIGNUP = {
    "nodes": [
        {"id": "start", "kind": "trigger", "config": {"condition_type": "contains", "condition_value": "join"}},
        {"id": "ask", "kind": "data_capture", "config": {
            "prompt": "Your email, please",
            "fields": [{"name": "email", "type": "email"}],
        }},
        {"id": "check", "kind": "condition"},
        {"id": "vip", "kind": "message", "config": {"content": "Welcome back {{email}}"}},
        {"id": "new", "kind": "message", "config": {"content": "Welcome {{email}}"}},
    ],
    "edges": [
        {"source": "start", "target": "ask"},
        {"source": "ask", "target": "check"},
        {"source": "check", "target": "vip", "condition": {"variable": "email", "operator": "ends_with", "value": "@vip.test"}},
        {"source": "check", "target": "new", "default": True},
    ],
}


def _inbound(text, conversation_id=500, **extra):
    return {
        "conversation_id": conversation_id,
        "contact_id": 9,
        "company_id": 1,
        "channel_id": 4,
        "channel_type": "webchat",
        "payload": {"text": text, **extra},
    }


@pytest.fixture()
def live_flow(client):
    flow = client.post("/api/v0/flows", json={"name": "Signup", "graph": SIGNUP, "company_id": 1}).json()
    assert client.post(f"/api/v0/flows/{flow['id']}:publish").status_code == 200
    r = client.post("/api/v0/assignments", json={"flow_id": flow["id"], "channel_id": 4})
    assert r.status_code == 201, r.text
    return flow


def test_inbound_event_runs_the_assigned_flow(client, live_flow, channel):
    r = client.post("/api/v0/events/inbound", json=_inbound("I want to join"))
    assert r.status_code == 202, r.text
    body = r.json()
    assert body["handled"] is True
    session = body["session"]
    assert session["status"] == "waiting"
    assert session["current_node_id"] == "ask"
    assert session["needs_attention"] is False
    assert channel.contents() == ["Your email, please"]

    resumed = client.post(f"/api/v0/sessions/{session['session_id']}:resume", json={"input": {"email": "ana@vip.test"}})
    assert resumed.status_code == 200, resumed.text
    assert resumed.json()["status"] == "completed"
    assert resumed.json()["execution_path"] == ["start", "ask", "check", "vip"]
    assert channel.contents()[-1] == "Welcome back ana@vip.test"

    steps = client.get(f"/api/v0/sessions/{session['session_id']}/steps").json()
    assert [(s["node_id"], s["status"]) for s in steps] == [
        ("start", "completed"), ("ask", "completed"), ("check", "completed"), ("new", "skipped"), ("vip", "completed"),
    ]

    execution = client.get(f"/api/v0/sessions/{session['session_id']}/execution").json()
    assert execution["status"] == "completed"
    assert execution["completion_rate"] == 1.0

    dropoff = client.get(f"/api/v0/flows/{live_flow['id']}/dropoff/new").json()
    assert dropoff["skipped"] == 1 and dropoff["dropoff_rate"] == 1.0
    report = client.get(f"/api/v0/flows/{live_flow['id']}/dropoff").json()
    assert report["flow_id"] == live_flow["id"]
    assert {n["node_id"] for n in report["nodes"]} == {"start", "ask", "check", "new", "vip"}


def test_inbound_without_a_matching_trigger_is_not_handled(client, live_flow):
    r = client.post("/api/v0/events/inbound", json=_inbound("just browsing"))
    assert r.status_code == 202
    assert r.json() == {"handled": False, "session": None}


def test_second_inbound_resumes_the_waiting_session(client, live_flow):
    first = client.post("/api/v0/events/inbound", json=_inbound("join")).json()["session"]
    second = client.post("/api/v0/events/inbound", json=_inbound("here", email="bo@example.com")).json()["session"]
    assert second["session_id"] == first["session_id"]
    assert second["status"] == "completed"
    assert second["execution_path"][-1] == "new"

    sessions = client.get(f"/api/v0/flows/{live_flow['id']}/sessions").json()
    assert sessions["total"] == 1
    assert sessions["items"][0]["session_id"] == first["session_id"]
    waiting = client.get(f"/api/v0/flows/{live_flow['id']}/sessions", params={"status": "waiting"}).json()
    assert waiting["total"] == 0


def test_cancel_then_resume_is_gone(client, live_flow):
    session = client.post("/api/v0/events/inbound", json=_inbound("join")).json()["session"]
    sid = session["session_id"]

    cancelled = client.post(f"/api/v0/sessions/{sid}:cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/api/v0/sessions/{sid}:cancel").json()["status"] == "cancelled"

    gone = client.post(f"/api/v0/sessions/{sid}:resume", json={"input": {"email": "a@b.co"}})
    assert gone.status_code == 410
    assert gone.json()["error"]["code"] == "EXPIRED"


def test_unknown_session_is_404(client):
    assert client.get("/api/v0/sessions/fs_nope").status_code == 404
    assert client.post("/api/v0/sessions/fs_nope:resume").status_code == 404
    assert client.get("/api/v0/sessions/fs_nope/variables").status_code == 404


def test_paused_session_resumed_by_an_operator(client, flow_engine):
    graph = {
        "nodes": [
            {"id": "check", "kind": "condition"},
            {"id": "ok", "kind": "message", "config": {"content": "ok"}},
        ],
        "edges": [{"source": "check", "target": "ok", "condition": {"variable": "ready", "operator": "exists"}}],
    }
    flow = client.post("/api/v0/flows", json={"name": "Gate", "graph": graph}).json()
    client.post(f"/api/v0/flows/{flow['id']}:publish")
    session = flow_engine.sessions.start_session(flow_id=flow["id"], conversation_id=1, contact_id=1, trigger_node_id="check")

    paused = client.get(f"/api/v0/sessions/{session.session_id}").json()
    assert paused["status"] == "paused" and paused["needs_attention"] is True
    assert paused["last_error_node_id"] == "check"

    flow_engine.variables.set(session, "ready", True)
    r = client.post(f"/api/v0/sessions/{session.session_id}:resume-paused")
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "completed"


def test_variables_listing_masks_encrypted_values(client, flow_engine, live_flow):
    flow_engine.variables.cipher = ValueCipher(os.urandom(32))
    sid = client.post("/api/v0/events/inbound", json=_inbound("join")).json()["session"]["session_id"]
    session = flow_engine.sessions.get_session(sid)
    flow_engine.variables.set(session, "token", "s3cret", encrypted=True)

    rows = {v["key"]: v for v in client.get(f"/api/v0/sessions/{sid}/variables").json()}
    assert rows["token"]["encrypted"] is True and rows["token"]["value"] is None
    assert rows["message"]["value"] == "join"
    assert rows["message"]["scope"] == "flow"

    flow_only = client.get(f"/api/v0/sessions/{sid}/variables", params={"scope": "flow"}).json()
    assert "token" not in {v["key"] for v in flow_only}

    removed = client.delete(f"/api/v0/sessions/{sid}/variables", params={"scope": "session"}).json()
    assert removed == {"removed": 1}
