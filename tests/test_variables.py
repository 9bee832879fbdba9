# tests/test_variables.py
import os
from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlmodel import Session, select

from convoflow.errors import FlowEngineError
from convoflow.models import FlowSession, FlowSessionVariable, VariableScope, VariableType
from convoflow.services.variables import ValueCipher, VariableStore
from convoflow.util.clock import utcnow


def _session(session_id, contact_id=10, company_id=1, node="ask"):
    # the store only reads identity and cursor fields; the row itself is never needed
    return FlowSession(
        session_id=session_id,
        flow_id=1,
        flow_version_id=1,
        conversation_id=100,
        contact_id=contact_id,
        company_id=company_id,
        trigger_node_id="start",
        current_node_id=node,
    )


@pytest.fixture()
def store(db_engine):
    return VariableStore(db_engine)


def test_set_then_get_infers_type(store):
    s = _session("fs_a")
    row = store.set(s, "age", 20)
    assert row.value_type == VariableType.number
    assert store.set(s, "tags", ["a"]).value_type == VariableType.array
    assert store.get(s, "age") == 20
    assert store.get(s, "missing", default="n/a") == "n/a"


def test_set_is_an_upsert_per_session_and_key(store, db_engine):
    s = _session("fs_a")
    store.set(s, "name", "Ana")
    store.set(s, "name", "Bea", scope=VariableScope.flow)
    assert store.get(s, "name") == "Bea"
    with Session(db_engine) as db:
        rows = db.exec(select(FlowSessionVariable).where(FlowSessionVariable.session_id == "fs_a")).all()
    assert len(rows) == 1 and rows[0].scope == VariableScope.flow


def test_user_scope_is_shared_by_the_contact_and_shadowed_by_session_scope(store):
    first = _session("fs_a", contact_id=10)
    second = _session("fs_b", contact_id=10)
    stranger = _session("fs_c", contact_id=99)

    store.set(first, "lang", "es", scope=VariableScope.user)
    assert store.get(second, "lang") == "es"
    assert store.get(stranger, "lang") is None

    store.set(second, "lang", "en")
    assert store.get(second, "lang") == "en"
    assert store.get(first, "lang") == "es"


def test_global_scope_is_shared_within_the_company(store):
    store.set(_session("fs_a", company_id=1), "plan", "pro", scope=VariableScope.global_)
    assert store.get(_session("fs_b", contact_id=55, company_id=1), "plan") == "pro"
    assert store.get(_session("fs_c", contact_id=55, company_id=2), "plan") is None


def test_node_scope_is_only_visible_on_its_node(store):
    at_ask = _session("fs_a", node="ask")
    store.set(at_ask, "attempt", 1, scope=VariableScope.node)
    assert store.get(at_ask, "attempt") == 1
    assert store.get(_session("fs_a", node="next"), "attempt") is None
    assert "attempt" not in store.snapshot(_session("fs_a", node="next"))


def test_expired_variables_are_invisible_and_swept(store, db_engine):
    s = _session("fs_a")
    store.set(s, "otp", "1234", ttl=60)
    store.set(s, "keep", "yes")
    assert store.get(s, "otp") == "1234"

    with Session(db_engine) as db:
        db.connection().execute(
            update(FlowSessionVariable)
            .where(FlowSessionVariable.key == "otp")
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )
        db.commit()

    assert store.get(s, "otp") is None
    assert [r.key for r in store.list(s)] == ["keep"]
    assert store.sweep_expired() == 1
    assert store.sweep_expired() == 0


def test_sweep_uses_the_given_clock(store):
    s = _session("fs_a")
    store.set(s, "otp", "1234", ttl=60)
    assert store.sweep_expired(now=utcnow()) == 0
    assert store.sweep_expired(now=utcnow() + timedelta(minutes=2)) == 1


def test_encrypted_values_are_stored_as_ciphertext(db_engine):
    store = VariableStore(db_engine, ValueCipher(os.urandom(32)))
    s = _session("fs_a")
    row = store.set(s, "card", {"last4": "4242"}, encrypted=True)
    assert row.encrypted
    assert isinstance(row.value, str) and "4242" not in row.value
    assert row.value_type == VariableType.object
    assert store.get(s, "card") == {"last4": "4242"}
    assert store.snapshot(s)["card"] == {"last4": "4242"}


def test_encryption_needs_a_key(store):
    with pytest.raises(FlowEngineError):
        store.set(_session("fs_a"), "card", "4242", encrypted=True)


def test_cipher_rejects_short_keys():
    with pytest.raises(ValueError):
        ValueCipher(b"short")


def test_render_list_delete_and_clear(store):
    s = _session("fs_a")
    store.set(s, "name", "Ana")
    store.set(s, "city", "Lima", scope=VariableScope.flow)
    store.set(s, "tmp", 1, scope=VariableScope.flow)

    assert store.render(s, "{{name}} from {{city}}") == "Ana from Lima"
    assert [r.key for r in store.list(s, scope=VariableScope.flow)] == ["city", "tmp"]

    assert store.delete(s, "tmp") is True
    assert store.delete(s, "tmp") is False
    assert store.clear(s, scope=VariableScope.flow) == 1
    assert store.snapshot(s) == {"name": "Ana"}
    assert store.clear(s) == 1
    assert store.snapshot(s) == {}
