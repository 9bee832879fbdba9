# tests/test_assignments.py
import pytest

from convoflow.errors import AssignmentNotFoundError, ConflictError, FlowNotFoundError

GRAPH = {"nodes": [{"id": "hello", "kind": "message", "config": {"content": "hi"}}], "edges": []}


@pytest.fixture()
def flows(flow_engine):
    return [flow_engine.flows.create_flow(name=f"flow-{i}", graph=GRAPH, company_id=1).id for i in range(3)]


def test_flow_active_on_another_channel_is_refused(flow_engine, flows):
    manager = flow_engine.assignments
    existing = manager.create_assignment(flows[0], channel_id=3)

    with pytest.raises(ConflictError):
        manager.create_assignment(flows[0], channel_id=2)

    current = manager.get_assignment(existing.id)
    assert current.is_active and current.channel_id == 3
    assert manager.active_for_channel(2) is None
    assert len(manager.list_assignments(flow_id=flows[0])) == 1


def test_activating_a_second_binding_of_the_flow_is_refused(flow_engine, flows):
    manager = flow_engine.assignments
    manager.create_assignment(flows[0], channel_id=3)
    idle = manager.create_assignment(flows[0], channel_id=2, active=False)
    assert idle.is_active is False

    with pytest.raises(ConflictError):
        manager.set_active(idle.id, True)
    assert manager.active_for_channel(3).flow_id == flows[0]
    assert manager.get_assignment(idle.id).is_active is False


def test_channel_runs_one_flow_at_a_time(flow_engine, flows):
    manager = flow_engine.assignments
    manager.create_assignment(flows[0], channel_id=7)
    with pytest.raises(ConflictError) as err:
        manager.create_assignment(flows[1], channel_id=7)
    assert err.value.details[0]["path"] == "channel_id"


def test_recreating_the_same_binding_returns_it(flow_engine, flows):
    manager = flow_engine.assignments
    first = manager.create_assignment(flows[0], channel_id=7)
    again = manager.create_assignment(flows[0], channel_id=7)
    assert again.id == first.id
    assert len(manager.list_assignments(channel_id=7)) == 1


def test_activation_swaps_the_flow_on_a_channel(flow_engine, flows):
    manager = flow_engine.assignments
    old = manager.create_assignment(flows[0], channel_id=7)
    new = manager.create_assignment(flows[1], channel_id=7, active=False)

    manager.set_active(new.id, True)
    assert manager.active_for_channel(7).id == new.id
    assert manager.get_assignment(old.id).is_active is False

    # the released flow can now be bound elsewhere
    manager.create_assignment(flows[0], channel_id=8)
    assert manager.active_for_channel(8).flow_id == flows[0]


def test_deactivate_then_reactivate(flow_engine, flows):
    manager = flow_engine.assignments
    a = manager.create_assignment(flows[2], channel_id=9)
    assert manager.set_active(a.id, False).is_active is False
    assert manager.active_for_channel(9) is None
    assert manager.set_active(a.id, False).is_active is False
    assert manager.set_active(a.id, True).is_active is True


def test_unknown_ids(flow_engine):
    with pytest.raises(FlowNotFoundError):
        flow_engine.assignments.create_assignment(999, channel_id=1)
    with pytest.raises(AssignmentNotFoundError):
        flow_engine.assignments.set_active(999, True)
    with pytest.raises(AssignmentNotFoundError):
        flow_engine.assignments.get_assignment(999)
