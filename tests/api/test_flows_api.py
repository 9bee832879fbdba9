GRAPH = {
    "nodes": [
        {"id": "start", "kind": "trigger", "config": {"condition_type": "contains", "condition_value": "hello"}},
        {"id": "greet", "kind": "message", "config": {"content": "Hi there"}},
    ],
    "edges": [{"source": "start", "target": "greet"}],
}


def _create(client, name="Greeter", graph=GRAPH, company_id=1):
    r = client.post("/api/v0/flows", json={"name": name, "graph": graph, "company_id": company_id})
    assert r.status_code == 201, r.text
    return r.json()


def test_healthz_echoes_request_id(client):
    r = client.get("/api/v0/healthz", headers={"X-Request-Id": "req-123"})
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers["X-Request-Id"] == "req-123"
    assert client.get("/api/v0/healthz").headers["X-Request-Id"]


def test_create_flow_draft_ok(client):
    body = _create(client)
    assert body["status"] == "draft"
    assert body["version"] == 1
    assert body["published_version_id"] is None
    assert [n["id"] for n in body["graph"]["nodes"]] == ["start", "greet"]


def test_invalid_graph_is_422_with_details(client):
    bad = {"nodes": [{"id": "a", "kind": "message"}], "edges": [{"source": "a", "target": "ghost"}]}
    r = client.post("/api/v0/flows", json={"name": "Broken", "graph": bad})
    assert r.status_code == 422, r.text
    error = r.json()["error"]
    assert error["code"] == "VALIDATION"
    assert any("ghost" in d["msg"] for d in error["details"])


def test_request_body_validation_uses_the_same_envelope(client):
    r = client.post("/api/v0/flows", json={"graph": GRAPH})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION"


def test_publish_then_edit_bumps_the_version(client):
    flow = _create(client)
    pub = client.post(f"/api/v0/flows/{flow['id']}:publish")
    assert pub.status_code == 200, pub.text
    v1 = pub.json()
    assert v1["version"] == 1 and v1["checksum"]

    upd = client.put(f"/api/v0/flows/{flow['id']}", json={"name": "Greeter v2"})
    assert upd.status_code == 200, upd.text
    assert upd.json()["version"] == 2
    assert upd.json()["published_version_id"] == v1["id"]

    v2 = client.post(f"/api/v0/flows/{flow['id']}:publish").json()
    assert v2["version"] == 2 and v2["id"] != v1["id"]
    assert client.get(f"/api/v0/flows/{flow['id']}").json()["published_version_id"] == v2["id"]


def test_archived_flows_are_read_only(client):
    flow = _create(client)
    assert client.post(f"/api/v0/flows/{flow['id']}:archive").json()["status"] == "archived"
    r = client.put(f"/api/v0/flows/{flow['id']}", json={"name": "nope"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "CONFLICT"
    assert client.post(f"/api/v0/flows/{flow['id']}:publish").status_code == 409


def test_list_flows_is_paginated(client):
    for i in range(3):
        _create(client, name=f"F{i}")
    _create(client, name="Other", company_id=2)

    page = client.get("/api/v0/flows", params={"company_id": 1, "limit": 2}).json()
    assert page["total"] == 3 and page["limit"] == 2 and len(page["items"]) == 2
    rest = client.get("/api/v0/flows", params={"company_id": 1, "limit": 2, "offset": 2}).json()
    assert [f["name"] for f in rest["items"]] == ["F2"]


def test_unknown_flow_is_404(client):
    r = client.get("/api/v0/flows/999")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"


def test_assignment_conflicts_are_409(client):
    first = _create(client)
    second = _create(client, name="Second")
    r = client.post("/api/v0/assignments", json={"flow_id": first["id"], "channel_id": 3})
    assert r.status_code == 201, r.text
    assert r.json()["is_active"] is True

    clash = client.post("/api/v0/assignments", json={"flow_id": second["id"], "channel_id": 3})
    assert clash.status_code == 409

    idle = client.post("/api/v0/assignments", json={"flow_id": second["id"], "channel_id": 3, "active": False}).json()
    swapped = client.post(f"/api/v0/assignments/{idle['id']}:activate")
    assert swapped.status_code == 200 and swapped.json()["is_active"] is True
    listed = client.get("/api/v0/assignments", params={"channel_id": 3}).json()
    assert {a["flow_id"]: a["is_active"] for a in listed} == {first["id"]: False, second["id"]: True}

    off = client.post(f"/api/v0/assignments/{idle['id']}:deactivate")
    assert off.json()["is_active"] is False
