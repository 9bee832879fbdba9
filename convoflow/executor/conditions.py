"""Edge predicates, edge selection and trigger matching."""

import re
from typing import Any, List, Mapping, Optional, Tuple

from convoflow.graph import Edge, FlowGraph, Predicate, TriggerConfig
from convoflow.templating import lookup

_MISSING = object()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any, case_sensitive: bool) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = "" if value is None else str(value)
    return text if case_sensitive else text.casefold()


def _equals(left: Any, right: Any, case_sensitive: bool) -> bool:
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return ln == rn
    return _as_text(left, case_sensitive) == _as_text(right, case_sensitive)


def evaluate(predicate: Predicate, variables: Mapping[str, Any]) -> bool:
    actual = lookup(variables, predicate.variable, _MISSING)
    op = predicate.operator
    expected = predicate.value
    cs = predicate.case_sensitive

    if op == "exists":
        return actual is not _MISSING and actual not in (None, "", [], {})
    if op == "not_exists":
        return actual is _MISSING or actual in (None, "", [], {})
    if actual is _MISSING:
        return False

    if op in ("gt", "gte", "lt", "lte"):
        ln, rn = _as_number(actual), _as_number(expected)
        if ln is None or rn is None:
            return False
        return {"gt": ln > rn, "gte": ln >= rn, "lt": ln < rn, "lte": ln <= rn}[op]
    if op == "equals":
        return _equals(actual, expected, cs)
    if op == "not_equals":
        return not _equals(actual, expected, cs)
    if op in ("in", "not_in"):
        options = expected if isinstance(expected, (list, tuple)) else str(expected).split(",")
        found = any(_equals(actual, option.strip() if isinstance(option, str) else option, cs) for option in options)
        return found if op == "in" else not found
    if op in ("contains", "not_contains"):
        if isinstance(actual, (list, tuple)):
            found = any(_equals(item, expected, cs) for item in actual)
        else:
            found = _as_text(expected, cs) in _as_text(actual, cs)
        return found if op == "contains" else not found
    if op == "starts_with":
        return _as_text(actual, cs).startswith(_as_text(expected, cs))
    if op == "ends_with":
        return _as_text(actual, cs).endswith(_as_text(expected, cs))
    if op == "regex":
        flags = 0 if cs else re.IGNORECASE
        return re.search(str(expected), _as_text(actual, True), flags) is not None
    return False


def edge_matches(edge: Edge, variables: Mapping[str, Any]) -> bool:
    if not edge.guarded:
        return True
    results = (evaluate(p, variables) for p in edge.conditions)
    return all(results) if edge.match == "all" else any(results)


def select_edge(graph: FlowGraph, node_id: str, variables: Mapping[str, Any]) -> Tuple[Optional[Edge], List[Edge]]:
    """
    Pick the outgoing edge to follow from `node_id`.

    Non-default edges are tried in definition order and the first match wins;
    the default edge is the fallback. Returns ``(taken, not_taken)``; ``taken``
    is None when no edge applies (the caller decides whether that ends the
    flow or is an error).
    """
    edges = graph.outgoing(node_id)
    default = None
    for edge in edges:
        if edge.default:
            default = default or edge
            continue
        if edge_matches(edge, variables):
            return edge, [e for e in edges if e is not edge]
    if default is not None:
        return default, [e for e in edges if e is not default]
    return None, edges


def matches_trigger(config: TriggerConfig, channel_type: Optional[str], text: str) -> bool:
    if config.channel_types and channel_type not in config.channel_types:
        return False
    if config.condition_type == "any":
        return True
    haystack = text if config.case_sensitive else text.casefold()
    value = config.condition_value if config.case_sensitive else config.condition_value.casefold()
    if config.condition_type == "regex":
        flags = 0 if config.case_sensitive else re.IGNORECASE
        return re.search(config.condition_value, text, flags) is not None
    keywords = [k.strip() for k in value.split(",") if k.strip()]
    if config.condition_type == "exact":
        return haystack.strip() in keywords
    return any(k in haystack for k in keywords)
