"""
Child-process entry point for code_execution steps.

Reads one JSON request from stdin::

    {"code": "...", "inputs": {...}, "outputs": ["name", ...], "network_timeout": 5.0}

compiles ``code`` with RestrictedPython and runs it against guarded builtins,
attribute access and imports, then writes one JSON reply to stdout::

    {"ok": true, "outputs": {...}, "stdout": "..."}
    {"ok": false, "error": "ZeroDivisionError: division by zero", "stdout": "..."}

This file is executed with ``python -I`` by ``convoflow.executor.sandbox`` and
imports nothing from the convoflow package.
"""

import builtins
import json
import operator
import sys
import types

from RestrictedPython import PrintCollector, compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)

ALLOWED_MODULES = frozenset({
    "base64", "collections", "datetime", "decimal", "functools", "hashlib",
    "itertools", "json", "math", "random", "re", "statistics", "string", "time",
    "uuid",
})

EXTRA_BUILTINS = (
    "all", "any", "ascii", "bin", "dict", "enumerate", "filter", "format",
    "frozenset", "iter", "list", "map", "max", "min", "next", "reversed", "set",
    "sum", "Exception", "ArithmeticError", "AttributeError", "LookupError",
    "RuntimeError", "StopIteration",
)

# frame, code and generator internals lead back to the runner's globals
INTROSPECTION_PREFIXES = ("gi_", "cr_", "ag_", "f_", "tb_", "co_")

INPLACE = {
    "+=": operator.iadd, "-=": operator.isub, "*=": operator.imul,
    "/=": operator.itruediv, "//=": operator.ifloordiv, "%=": operator.imod,
    "**=": operator.ipow, "<<=": operator.ilshift, ">>=": operator.irshift,
    "&=": operator.iand, "|=": operator.ior, "^=": operator.ixor,
}


def _allowed_module(name):
    return name.split(".")[0] in ALLOWED_MODULES


def _guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or not _allowed_module(name):
        raise ImportError(f"import of '{name}' is not allowed")
    return builtins.__import__(name, globals, locals, fromlist, level)


def _guarded_getattr(obj, name, *default):
    if name.startswith(INTROSPECTION_PREFIXES):
        raise AttributeError(f"access to '{name}' is not allowed")
    value = safer_getattr(obj, name, *default)
    if isinstance(value, types.ModuleType) and not _allowed_module(value.__name__):
        raise AttributeError(f"access to module '{value.__name__}' is not allowed")
    return value


def _inplacevar(op, target, value):
    return INPLACE[op](target, value)


def _make_http_request(timeout):
    def http_request(method, url, headers=None, json_body=None, params=None):
        import httpx

        response = httpx.request(
            method.upper(), url, headers=headers, json=json_body, params=params, timeout=timeout
        )
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return {"status": response.status_code, "body": body}

    return http_request


def _restricted_globals(inputs, network_timeout):
    safe = dict(safe_builtins)
    safe.update({name: getattr(builtins, name) for name in EXTRA_BUILTINS})
    safe["__import__"] = _guarded_import
    safe["_getattr_"] = _guarded_getattr

    namespace = dict(inputs)
    namespace.update({
        "__builtins__": safe,
        "__name__": "flow_script",
        "_getattr_": _guarded_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": lambda fn, *args, **kwargs: fn(*args, **kwargs),
        "_print_": PrintCollector,
        "http_request": _make_http_request(network_timeout),
        "inputs": dict(inputs),
    })
    return namespace


def _printed(namespace):
    collector = namespace.get("_print")
    return collector() if collector is not None else ""


def run(request):
    namespace = _restricted_globals(request.get("inputs") or {}, request.get("network_timeout", 5.0))
    try:
        code = compile_restricted(request["code"], "<flow-script>", "exec")
    except SyntaxError as exc:
        return {"ok": False, "error": f"SyntaxError: {exc}", "stdout": ""}

    try:
        exec(code, namespace)
    except Exception as exc:
        return {"ok": False, "error": f"{type(exc).__name__}: {exc}", "stdout": _printed(namespace)}

    outputs = {}
    for name in request.get("outputs") or []:
        if name in namespace:
            outputs[name] = namespace[name]
    returned = namespace.get("outputs")
    if isinstance(returned, dict):
        for name in request.get("outputs") or returned.keys():
            if name in returned:
                outputs[name] = returned[name]
    return {"ok": True, "outputs": outputs, "stdout": _printed(namespace)}


def main():
    request = json.loads(sys.stdin.read())
    reply = run(request)
    sys.stdout.write(json.dumps(reply, default=str))
    sys.stdout.flush()


if __name__ == "__main__":
    main()
