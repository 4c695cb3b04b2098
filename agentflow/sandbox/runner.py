"""Child-side entry point for sandboxed transform execution.

Started by ``SandboxExecutor`` as ``python -I runner.py``. Reads one JSON
request ``{"code", "input", "limits"}`` from stdin, runs the code as the body
of ``def transform(data)`` with a restricted builtins table, and writes one
JSON response to stdout:

    {"success": true, "result": ...}
    {"success": false, "error": "...", "kind": "script" | "sandbox"}

This file must stay importable without the agentflow package: isolated mode
does not put the project on sys.path.
"""

import ast
import json
import sys
import textwrap

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "callable", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "oct", "ord",
    "pow", "print", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "str", "sum", "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "IndexError",
    "KeyError", "LookupError", "RuntimeError", "StopIteration", "TypeError",
    "ValueError", "ZeroDivisionError",
)


def _safe_builtins() -> dict:
    import builtins

    return {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}


def _apply_limits(limits: dict) -> None:
    if sys.platform == "win32":
        return
    import resource

    cpu = int(limits.get("cpu_seconds") or 0)
    if cpu > 0:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu))
    memory_mb = int(limits.get("memory_mb") or 0)
    if memory_mb > 0:
        size = memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (size, size))
        except (ValueError, OSError):
            # Hard limit already lower than requested
            pass
    # No file creation
    resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))


# Frame, code and traceback attributes lead back to this module's globals
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await", "cr_origin",
        "ag_frame", "ag_code", "ag_await",
        "f_back", "f_globals", "f_locals", "f_builtins", "f_code", "f_trace",
        "tb_frame", "tb_next",
    }
)


class _RejectedCode(Exception):
    pass


def _check_source(tree: ast.AST) -> None:
    """Reject private, frame and traceback attribute access."""
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and (
            node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES
        ):
            raise _RejectedCode(f"Access to attribute '{node.attr}' is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise _RejectedCode(f"Access to name '{node.id}' is not allowed")
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise _RejectedCode("Imports are not allowed")


def _build_function(code: str):
    source = "def transform(data):\n" + textwrap.indent(code, "    ") + "\n    pass\n"
    tree = ast.parse(source, filename="<transform>")
    _check_source(tree)
    namespace = {"__builtins__": _safe_builtins()}
    exec(compile(tree, "<transform>", "exec"), namespace)
    return namespace["transform"]


def _isolate_host() -> None:
    """Strip this module's globals before user code runs.

    The frames that call the transform keep these globals, so they must not
    hold modules or the full builtins.
    """
    host = globals()
    for name in ("ast", "json", "sys", "textwrap"):
        host.pop(name, None)
    host["__builtins__"] = _safe_builtins()


def main() -> int:
    dumps = json.dumps

    # User print() goes to stderr; stdout carries only the response
    response_stream = sys.stdout
    sys.stdout = sys.stderr

    def respond(payload: dict) -> int:
        response_stream.write(dumps(payload))
        response_stream.write("\n")
        response_stream.flush()
        return 0

    try:
        request = json.loads(sys.stdin.read())
        code = request["code"]
        data = request.get("input")
        limits = request.get("limits") or {}
    except (ValueError, KeyError, TypeError) as e:
        return respond({"success": False, "error": f"Malformed request: {e}", "kind": "sandbox"})

    _apply_limits(limits)

    try:
        transform = _build_function(code)
    except SyntaxError as e:
        return respond(
            {"success": False, "error": f"SyntaxError: {e.msg} (line {e.lineno})", "kind": "script"}
        )
    except _RejectedCode as e:
        return respond({"success": False, "error": str(e), "kind": "script"})

    _isolate_host()
    try:
        result = transform(data)
    except Exception as e:
        return respond({"success": False, "error": f"{type(e).__name__}: {e}", "kind": "script"})

    try:
        encoded = dumps({"success": True, "result": result})
    except (TypeError, ValueError) as e:
        return respond(
            {"success": False, "error": f"Result is not JSON-serializable: {e}", "kind": "script"}
        )
    response_stream.write(encoded)
    response_stream.write("\n")
    response_stream.flush()
    return 0


if __name__ == "__main__":
    # main() removes sys from the globals
    exit_process = sys.exit
    exit_process(main())
