"""
``{{variable}}`` interpolation over a resolved variable snapshot.

Values keep their stored type until rendering, so booleans render as
``true``/``false``, whole floats lose the trailing ``.0`` and objects/arrays
render as JSON.
"""

import json
import re
from typing import Any, Mapping

PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-\[\]]+)\s*\}\}")

_MISSING = object()


def lookup(variables: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve ``key`` or ``key.sub.path`` (``items.0`` indexes lists)."""
    if path in variables:
        return variables[path]
    head, _, rest = path.partition(".")
    if head not in variables:
        return default
    current = variables[head]
    for part in rest.split(".") if rest else []:
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            idx = int(part)
            current = current[idx] if -len(current) <= idx < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render(template: str, variables: Mapping[str, Any]) -> str:
    if not template:
        return ""
    return PLACEHOLDER.sub(lambda m: format_value(lookup(variables, m.group(1))), template)


def render_data(data: Any, variables: Mapping[str, Any]) -> Any:
    """Render every string inside a JSON-like structure. A string that is exactly
    one placeholder is replaced by the raw value so types survive."""
    if isinstance(data, str):
        whole = PLACEHOLDER.fullmatch(data.strip())
        if whole:
            return lookup(variables, whole.group(1))
        return render(data, variables)
    if isinstance(data, dict):
        return {k: render_data(v, variables) for k, v in data.items()}
    if isinstance(data, list):
        return [render_data(v, variables) for v in data]
    return data
