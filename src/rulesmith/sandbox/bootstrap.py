"""
Child-side entry point of the sandbox.

This file is executed directly by an isolated interpreter
(``python -I -S bootstrap.py``) and must only depend on the standard
library. It never imports rulesmith.

Protocol:
    stdin:  one JSON object {mode, code, context, args, max_memory_mb, cpu_seconds}
    stdout: one JSON object {ok, result, kind, message, logs, baseline_kb, peak_kb}

The process applies its own resource limits before the untrusted code is
compiled, then runs it against a namespace whose builtins are a fixed
allow-list. Imports, file access and dynamic evaluation are absent. The code
is compiled first; host modules and the real builtins are then removed
from this module's globals, so a frame walk back into the bootstrap finds
only plain helpers.
"""

import ast
import builtins
import copy
import json
import math
import sys
import types

if sys.platform != "win32":
    import resource
else:
    resource = None

SAFE_BUILTINS = {
    name: getattr(builtins, name)
    for name in (
        "abs", "all", "any", "bool", "chr", "dict", "divmod", "enumerate",
        "filter", "float", "frozenset", "hash", "int", "isinstance", "len",
        "list", "map", "max", "min", "ord", "pow", "range", "repr",
        "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple",
        "zip", "ArithmeticError", "AssertionError", "AttributeError",
        "Exception", "IndexError", "KeyError", "LookupError", "RuntimeError",
        "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
    )
}

RESTRICTED_NAMES = frozenset({
    "open", "eval", "exec", "compile", "__import__", "globals", "locals",
    "vars", "getattr", "setattr", "delattr", "input", "breakpoint", "exit",
    "quit", "help", "memoryview", "print",
})

MAX_LOG_MESSAGES = 100

# Module globals removed before untrusted code runs
HOST_NAMES = (
    "ast", "builtins", "copy", "json", "math", "sys", "types", "resource",
    "__builtins__", "__loader__", "__spec__",
)


def _limit(which, value):
    soft, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(which, (value, hard))


def apply_limits(max_memory_mb, cpu_seconds):
    """Apply OS limits to this process. No-op where resource is unavailable."""
    if resource is None:
        return
    if max_memory_mb:
        _limit(resource.RLIMIT_AS, int(max_memory_mb) * 1024 * 1024)
    if cpu_seconds:
        _limit(resource.RLIMIT_CPU, int(math.ceil(cpu_seconds)))
    _limit(resource.RLIMIT_FSIZE, 0)
    if hasattr(resource, "RLIMIT_NPROC"):
        try:
            _limit(resource.RLIMIT_NPROC, 0)
        except (ValueError, OSError):
            pass


def peak_kb(_resource=resource):
    if _resource is None:
        return 0
    return _resource.getrusage(_resource.RUSAGE_SELF).ru_maxrss


class RestrictedLog:
    """Logger exposed to untrusted code. Messages are returned to the host."""

    def __init__(self):
        self.messages = []

    def _record(self, level, args):
        if len(self.messages) < MAX_LOG_MESSAGES:
            self.messages.append({"level": level, "message": " ".join(str(a) for a in args)})

    def debug(self, *args):
        self._record("debug", args)

    def info(self, *args):
        self._record("info", args)

    def warn(self, *args):
        self._record("warning", args)

    warning = warn

    def error(self, *args):
        self._record("error", args)


def deep_equal(a, b):
    return a == b and type(a) is type(b)


def has_property(obj, path):
    current = obj
    for part in str(path).split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return False
    return True


def type_of(value):
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def deep_clone(value, _deepcopy=copy.deepcopy):
    return _deepcopy(value)


def build_namespace(context, log):
    """Globals visible to the untrusted code."""
    math_ns = types.SimpleNamespace(
        **{k: getattr(math, k) for k in dir(math) if not k.startswith("_")}
    )
    namespace = {
        "__builtins__": dict(SAFE_BUILTINS),
        "math": math_ns,
        "json_dumps": json.dumps,
        "json_loads": json.loads,
        "log": log,
        "utils": types.SimpleNamespace(
            deep_equal=deep_equal,
            has_property=has_property,
            type_of=type_of,
            deep_clone=deep_clone,
        ),
        "context": context,
    }
    if isinstance(context, dict):
        for key, value in context.items():
            if isinstance(key, str) and key.isidentifier() and key not in namespace and key != "result":
                namespace[key] = value
    return namespace


def prepare_code(code, namespace):
    """
    Compile a fragment into a runner.

    The runner's value is `result` if assigned, else the last expression.
    """
    tree = ast.parse(code, mode="exec")
    last_expr = None
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last_expr = compile(ast.Expression(tree.body.pop().value), "<sandbox>", "eval")
    body = compile(tree, "<sandbox>", "exec")

    def run():
        exec(body, namespace)
        value = eval(last_expr, namespace) if last_expr is not None else None
        return namespace["result"] if "result" in namespace else value

    return run


def prepare_function(code, args, namespace):
    """Compile a lambda expression, or a fragment whose last def is called."""
    tree = ast.parse(code, mode="exec")
    if len(tree.body) == 1 and isinstance(tree.body[0], ast.Expr):
        expression = compile(ast.Expression(tree.body[0].value), "<sandbox>", "eval")

        def load():
            return eval(expression, namespace)
    else:
        names = [n.name for n in tree.body if isinstance(n, ast.FunctionDef)]
        if not names:
            raise ValueError("No function definition found")
        body = compile(tree, "<sandbox>", "exec")
        entry = names[-1]

        def load():
            exec(body, namespace)
            return namespace[entry]

    def run():
        fn = load()
        if not callable(fn):
            raise TypeError("Function code did not produce a callable")
        return fn(*args)

    return run


def classify(exc):
    """Map an exception raised by untrusted code to a sandbox error kind."""
    if isinstance(exc, MemoryError):
        return "memory"
    if isinstance(exc, ImportError):
        return "module"
    if isinstance(exc, NameError):
        name = getattr(exc, "name", None)
        if name in RESTRICTED_NAMES:
            return "security"
    return "runtime"


def scrub_module():
    """
    Remove host modules and the real builtins from this module's globals.

    Frames of the untrusted code chain back to this module; after the scrub
    its globals hold only plain helpers. Functions defined above keep the
    builtins they captured when they were created.
    """
    module_globals = globals()
    for name in HOST_NAMES:
        module_globals.pop(name, None)


def main():
    payload = json.loads(sys.stdin.read())
    dumps, loads = json.dumps, json.loads
    write, flush = sys.stdout.write, sys.stdout.flush
    log = RestrictedLog()
    response = {"ok": False, "result": None, "kind": None, "message": None}

    try:
        apply_limits(payload.get("max_memory_mb"), payload.get("cpu_seconds"))
    except (ValueError, OSError) as e:
        response.update(kind="security", message=f"Could not apply resource limits: {e}")
        write(dumps(response))
        return 0

    baseline = peak_kb()
    namespace = build_namespace(payload.get("context") or {}, log)
    try:
        if payload.get("mode") == "function":
            run = prepare_function(payload["code"], payload.get("args") or [], namespace)
        else:
            run = prepare_code(payload["code"], namespace)
        del payload
        scrub_module()
        value = run()
        encoded = dumps(value)
        response.update(ok=True, result=loads(encoded))
    except RecursionError as e:
        response.update(kind="runtime", message=f"RecursionError: {e}")
    except (TypeError, ValueError) as e:
        if "JSON serializable" in str(e) or "Out of range float" in str(e):
            response.update(kind="runtime", message=f"Result is not JSON-serializable: {e}")
        else:
            response.update(kind="runtime", message=f"{type(e).__name__}: {e}")
    except BaseException as e:  # untrusted code may raise anything, SystemExit included
        response.update(kind=classify(e), message=f"{type(e).__name__}: {e}")

    response["logs"] = log.messages
    response["baseline_kb"] = baseline
    response["peak_kb"] = peak_kb()
    write(dumps(response))
    flush()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
