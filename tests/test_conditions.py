# tests/test_conditions.py
import pytest

from convoflow.executor.conditions import evaluate, matches_trigger, select_edge
from convoflow.graph import Predicate, TriggerConfig, parse_graph
from convoflow.templating import render, render_data


@pytest.mark.parametrize(
    "operator, actual, expected, result",
    [
        ("equals", "Yes", "yes", True),
        ("equals", "20", 20, True),
        ("not_equals", "a", "b", True),
        ("gte", 20, 18, True),
        ("gte", "17", 18, False),
        ("lt", 3.5, "4", True),
        ("gt", "abc", 1, False),
        ("contains", "I want pizza", "PIZZA", True),
        ("contains", ["a", "b"], "b", True),
        ("not_contains", "hello", "bye", True),
        ("starts_with", "Hello there", "hello", True),
        ("ends_with", "file.pdf", ".PDF", True),
        ("in", "red", ["green", "red"], True),
        ("in", "red", "green, blue", False),
        ("not_in", "red", ["green"], True),
        ("regex", "order #123", r"#\d+", True),
        ("exists", "x", None, True),
        ("exists", "", None, False),
    ],
)
def test_operators(operator, actual, expected, result):
    p = Predicate(variable="v", operator=operator, value=expected)
    assert evaluate(p, {"v": actual}) is result


def test_missing_variable_only_satisfies_not_exists():
    assert evaluate(Predicate(variable="nope", operator="not_exists"), {}) is True
    assert evaluate(Predicate(variable="nope", operator="not_equals", value="x"), {}) is False


def test_case_sensitive_comparison():
    p = Predicate(variable="v", operator="equals", value="Yes", case_sensitive=True)
    assert evaluate(p, {"v": "yes"}) is False


def test_nested_variable_paths():
    p = Predicate(variable="order.items.0.sku", operator="equals", value="A1")
    assert evaluate(p, {"order": {"items": [{"sku": "A1"}]}}) is True


def _branching():
    return parse_graph({
        "nodes": [
            {"id": "c", "kind": "condition"},
            {"id": "vip", "kind": "message"},
            {"id": "adult", "kind": "message"},
            {"id": "other", "kind": "message"},
        ],
        "edges": [
            {"source": "c", "target": "other", "default": True},
            {"source": "c", "target": "vip", "conditions": [
                {"variable": "age", "operator": "gte", "value": 18},
                {"variable": "tier", "operator": "equals", "value": "gold"},
            ]},
            {"source": "c", "target": "adult", "condition": {"variable": "age", "operator": "gte", "value": 18}},
        ],
    })


def test_first_matching_edge_wins_in_definition_order():
    taken, not_taken = select_edge(_branching(), "c", {"age": 30, "tier": "gold"})
    assert taken.target == "vip"
    assert sorted(e.target for e in not_taken) == ["adult", "other"]


def test_default_edge_is_the_fallback_even_when_declared_first():
    taken, _ = select_edge(_branching(), "c", {"age": 10})
    assert taken.target == "other"
    taken, _ = select_edge(_branching(), "c", {"age": 20, "tier": "silver"})
    assert taken.target == "adult"


def test_match_any():
    g = parse_graph({
        "nodes": [{"id": "c", "kind": "condition"}, {"id": "y", "kind": "message"}],
        "edges": [{"source": "c", "target": "y", "match": "any", "conditions": [
            {"variable": "a", "operator": "equals", "value": 1},
            {"variable": "b", "operator": "equals", "value": 1},
        ]}],
    })
    assert select_edge(g, "c", {"a": 0, "b": 1})[0].target == "y"
    assert select_edge(g, "c", {"a": 0, "b": 0})[0] is None


@pytest.mark.parametrize(
    "config, channel_type, text, result",
    [
        ({}, "whatsapp", "anything", True),
        ({"channel_types": ["telegram"]}, "whatsapp", "hi", False),
        ({"condition_type": "contains", "condition_value": "price, cost"}, None, "What is the COST?", True),
        ({"condition_type": "contains", "condition_value": "price"}, None, "hello", False),
        ({"condition_type": "exact", "condition_value": "start,begin"}, None, " Start ", True),
        ({"condition_type": "exact", "condition_value": "start"}, None, "start now", False),
        ({"condition_type": "regex", "condition_value": r"^order\s+\d+$"}, None, "ORDER 12", True),
        ({"condition_type": "contains", "condition_value": "Hi", "case_sensitive": True}, None, "hi", False),
    ],
)
def test_trigger_matching(config, channel_type, text, result):
    assert matches_trigger(TriggerConfig(**config), channel_type, text) is result


def test_render_formats_by_value_type():
    variables = {"name": "Ana", "ok": True, "total": 12.0, "tags": ["a", "b"], "user": {"city": "Lima"}}
    assert render("{{name}} {{ok}} {{total}} {{tags}} {{user.city}} {{missing}}!", variables) == \
        'Ana true 12 ["a", "b"] Lima !'


def test_render_data_keeps_types_for_whole_placeholders():
    body = render_data({"age": "{{age}}", "greeting": "hi {{name}}", "list": ["{{age}}"]}, {"age": 20, "name": "Bo"})
    assert body == {"age": 20, "greeting": "hi Bo", "list": [20]}
