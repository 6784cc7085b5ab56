"""Sandbox child process entry point.

The parent spawns ``run_script`` in a fresh interpreter. The script runs in a
namespace that only holds the injected bindings; every observable event is
streamed back over ``conn`` in the order it happened:

    ("log", str)            captured console output
    ("api_call", dict)      one completed mock API call
    ("limit", kind)         a limit was hit inside the child
    ("error", dict)         the script raised
    ("done", dict)          the script finished normally

Standard library and psutil only.
"""

import ast
import builtins
import json
import math
import datetime
import os
import traceback
import types
from typing import Any, Dict, Optional

import psutil

from codepage_sandbox.infrastructure.enforcement.limits import ResourceLimitExceeded
from codepage_sandbox.infrastructure.enforcement.monitor import ResourceMonitor
from codepage_sandbox.infrastructure.sandbox.mock_api import MockExternalApi

SCRIPT_FILENAME = "<codepage>"

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter",
    "float", "format", "frozenset", "hash", "int", "isinstance", "issubclass",
    "iter", "len", "list", "map", "max", "min", "next", "pow", "range",
    "repr", "reversed", "round", "set", "slice", "sorted", "str", "sum",
    "tuple", "zip", "bytes", "bytearray", "chr", "ord", "hex", "oct", "bin",
    "callable", "hasattr", "object", "property", "staticmethod", "classmethod",
    "super", "__build_class__", "True", "False", "None",
    "BaseException", "Exception", "ArithmeticError", "AssertionError", "AttributeError",
    "IndexError", "KeyError", "LookupError", "NameError", "RuntimeError",
    "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
    "NotImplementedError", "RecursionError",
)

# Scripts get these names only, never the modules themselves: a module's
# public attributes (json.codecs, datetime.sys) lead back to the host.
JSON_NAMES = ("dumps", "loads", "JSONDecodeError")
MATH_NAMES = (
    "ceil", "floor", "trunc", "fabs", "fsum", "sqrt", "exp", "log", "log2", "log10",
    "pow", "sin", "cos", "tan", "asin", "acos", "atan", "atan2", "hypot", "degrees",
    "radians", "isclose", "isfinite", "isinf", "isnan", "gcd", "factorial", "comb",
    "perm", "prod", "copysign", "fmod", "modf", "pi", "e", "tau", "inf", "nan",
)
DATETIME_NAMES = ("datetime", "date", "time", "timedelta", "timezone", "MINYEAR", "MAXYEAR")


def module_facade(module, names) -> types.SimpleNamespace:
    """Namespace holding only ``names`` copied from ``module``."""
    return types.SimpleNamespace(**{name: getattr(module, name) for name in names if hasattr(module, name)})


class SandboxViolation(SyntaxError):
    """Raised when a script uses a construct the sandbox does not allow."""


def check_source(tree: ast.AST) -> None:
    """Rejects imports and dunder/private attribute access."""
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise SandboxViolation(
                "import statements are not allowed",
                (SCRIPT_FILENAME, node.lineno, node.col_offset + 1, None),
            )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise SandboxViolation(
                f"access to private attribute '{node.attr}' is not allowed",
                (SCRIPT_FILENAME, node.lineno, node.col_offset + 1, None),
            )
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SandboxViolation(
                f"access to '{node.id}' is not allowed",
                (SCRIPT_FILENAME, node.lineno, node.col_offset + 1, None),
            )


def _format_arg(arg: Any) -> str:
    if isinstance(arg, (dict, list)):
        return json.dumps(arg, default=str)
    return str(arg)


class Console:
    """Console that appends to the run's log instead of a shared stream."""

    def __init__(self, emit):
        self._emit = emit

    def _write(self, prefix: str, args) -> None:
        message = " ".join(_format_arg(a) for a in args)
        stamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
        self._emit("log", f"[{stamp}] {prefix}{message}")

    def log(self, *args: Any) -> None:
        self._write("", args)

    def info(self, *args: Any) -> None:
        self._write("INFO: ", args)

    def warn(self, *args: Any) -> None:
        self._write("WARN: ", args)

    def error(self, *args: Any) -> None:
        self._write("ERROR: ", args)


def build_namespace(console: Console, api: MockExternalApi, monitor: ResourceMonitor, test_data: Any) -> Dict[str, Any]:
    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES if hasattr(builtins, name)}
    safe_builtins["print"] = console.log
    process = psutil.Process(os.getpid())

    def get_resource_usage() -> Dict[str, Any]:
        usage = monitor.usage()
        usage["memory_usage"] = process.memory_info().rss
        return usage

    return {
        "__builtins__": safe_builtins,
        "__name__": "codepage",
        "console": console,
        "api": api,
        "json": module_facade(json, JSON_NAMES),
        "math": module_facade(math, MATH_NAMES),
        "datetime": module_facade(datetime, DATETIME_NAMES),
        "get_resource_usage": get_resource_usage,
        "testData": test_data if test_data is not None else {},
    }


def describe_exception(exc: BaseException) -> Dict[str, Any]:
    """Extracts type, message, stack and the innermost script position."""
    line: Optional[int] = None
    column: Optional[int] = None
    if isinstance(exc, SyntaxError) and exc.filename == SCRIPT_FILENAME:
        line, column = exc.lineno, exc.offset
    else:
        for frame in traceback.extract_tb(exc.__traceback__):
            if frame.filename == SCRIPT_FILENAME:
                line = frame.lineno
                column = (frame.colno + 1) if getattr(frame, "colno", None) is not None else None
    return {
        "type": type(exc).__name__,
        "mro": [cls.__name__ for cls in type(exc).__mro__],
        "message": str(exc) or type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        "line": line,
        "column": column,
    }


def run_script(
    conn,
    source: str,
    test_data: Any,
    fixtures: Optional[dict],
    limits: Dict[str, int],
    latency_scale: float,
) -> None:
    """Child entry point. Never returns data any other way than ``conn``."""
    process = psutil.Process(os.getpid())

    def emit(kind: str, payload: Any) -> None:
        conn.send((kind, payload))

    monitor = ResourceMonitor(
        timeout_ms=limits["timeout_ms"],
        memory_limit_bytes=limits["memory_limit_bytes"],
        api_call_limit=limits["api_call_limit"],
    )
    console = Console(emit)
    api = MockExternalApi(monitor, emit, fixtures=fixtures, latency_scale=latency_scale)

    try:
        tree = ast.parse(source, filename=SCRIPT_FILENAME, mode="exec")
        check_source(tree)
        code = compile(tree, SCRIPT_FILENAME, "exec")
        namespace = build_namespace(console, api, monitor, test_data)
        exec(code, namespace)
    except ResourceLimitExceeded as exc:
        emit("limit", exc.kind)
    except MemoryError:
        emit("limit", "MemoryExceeded")
    except BaseException as exc:  # script code may raise anything, SystemExit included
        emit("error", describe_exception(exc))
    else:
        if monitor.violation:
            # script swallowed the limit error with a bare except
            emit("limit", monitor.violation)
        else:
            emit("done", {"rss": process.memory_info().rss})
    finally:
        conn.close()
