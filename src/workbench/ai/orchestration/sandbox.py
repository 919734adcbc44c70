"""Subprocess sandbox for the ``run_script`` action.

Scripts run in a separate isolated interpreter (``python -I``) with an empty
environment and a throwaway working directory. The child only sees restricted
builtins plus two injected capabilities, ``console`` and ``fs``; every ``fs``
call is a JSON-lines round trip to the parent, which serves it from the
batch's file snapshot.

Source is rejected before launch when it names anything starting with an
underscore or one of the frame and code attributes, which closes the
introspection routes back to the real builtins. On POSIX the child also runs
under resource limits, and when the parent is root it is moved into a fresh
network namespace and dropped to an unprivileged uid.
"""

from __future__ import annotations

import ast
import asyncio
import ctypes
import ctypes.util
import json
import logging
import math
import os
import sys
import tempfile
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..errors import ScriptError

if sys.platform != "win32":
    import resource

__all__ = [
    "ScriptSandbox",
    "ScriptRun",
    "check_script",
    "erase_annotations",
    "ReadCallback",
    "WriteCallback",
]

LOGGER = logging.getLogger(__name__)

ReadCallback = Callable[[str], Awaitable[str]]
WriteCallback = Callable[[str, str], Awaitable[None]]

_STREAM_LIMIT = 16 * 1024 * 1024
_TYPING_MODULES = frozenset({"typing", "typing_extensions", "__future__"})

# Attributes that reach frames, code objects or globals without an underscore.
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await",
        "ag_frame", "ag_code", "ag_await",
        "tb_frame", "tb_next",
        "f_back", "f_builtins", "f_code", "f_globals", "f_locals",
        "func_globals", "format_map", "mro",
    }
)

CLONE_NEWNET = 0x40000000
UNPRIVILEGED_UID = 65534
UNPRIVILEGED_GID = 65534
DEFAULT_MEMORY_LIMIT = 1024 * 1024 * 1024
_OPEN_FILES_LIMIT = 32

_BOOTSTRAP = r'''
import builtins as _builtins
import json as _json
import sys as _sys

_channel = _sys.stdout
_sys.stdout = _sys.stderr


def _send(message):
    _channel.write(_json.dumps(message) + "\n")
    _channel.flush()


def _receive():
    line = _sys.stdin.readline()
    if not line:
        raise SystemExit(3)
    return _json.loads(line)


def _join(args, sep=" "):
    return sep.join(str(arg) for arg in args)


class _Console:
    def log(self, *args):
        _send({"op": "log", "text": _join(args)})

    def warn(self, *args):
        _send({"op": "log", "text": "[Warn] " + _join(args)})

    def error(self, *args):
        _send({"op": "log", "text": "[Error] " + _join(args)})

    info = log
    debug = log


class _Files:
    def read(self, path):
        _send({"op": "read", "path": str(path)})
        reply = _receive()
        if not reply.get("ok"):
            raise FileNotFoundError(reply.get("error") or "File '%s' not found" % path)
        return reply["text"]

    def write(self, path, text):
        _send({"op": "write", "path": str(path), "text": str(text)})
        reply = _receive()
        if not reply.get("ok"):
            raise OSError(reply.get("error") or "Write failed")


console = _Console()
fs = _Files()


def _print(*args, sep=" ", end="\n", **_ignored):
    console.log(_join(args, sep))


_ALLOWED = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr", "dict", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "oct", "ord", "pow",
    "range", "repr", "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "__build_class__", "object", "property", "staticmethod", "classmethod", "super",
    "Exception", "ArithmeticError", "AssertionError", "AttributeError", "IndexError", "KeyError",
    "LookupError", "NameError", "NotImplementedError", "OSError", "RuntimeError", "StopIteration",
    "TypeError", "ValueError", "ZeroDivisionError", "FileNotFoundError",
)
_safe = {name: getattr(_builtins, name) for name in _ALLOWED if hasattr(_builtins, name)}
_safe["print"] = _print

_request = _receive()
_scope = {"__builtins__": _safe, "__name__": "__script__", "console": console, "fs": fs}
try:
    exec(compile(_request["source"], "<script>", "exec"), _scope)
except BaseException as _exc:
    _message = str(_exc)
    _send({"op": "error", "message": "%s: %s" % (type(_exc).__name__, _message) if _message else type(_exc).__name__})
else:
    _send({"op": "done"})
'''


@dataclass(slots=True)
class ScriptRun:
    """Captured console output of a finished script."""

    logs: list[str] = field(default_factory=list)

    @property
    def output(self) -> str:
        return "\n".join(self.logs) if self.logs else "(No output)"


class ScriptSandbox:
    """Runs untrusted script text with only ``console`` and ``fs`` reachable."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        python: str | None = None,
        memory_limit: int | None = DEFAULT_MEMORY_LIMIT,
    ) -> None:
        self._timeout = timeout
        self._python = python or sys.executable
        self._memory_limit = memory_limit

    async def run(self, source: str, *, read: ReadCallback, write: WriteCallback) -> ScriptRun:
        """Execute ``source`` and return its console output.

        Raises:
            ScriptError: the source was rejected, the script raised, timed out
                or the child died; the logs captured so far travel with the error.
        """

        check_script(source)
        run = ScriptRun()
        with tempfile.TemporaryDirectory(prefix="workbench-script-") as workdir:
            if self._drops_privileges():
                os.chmod(workdir, 0o755)
            proc = await asyncio.create_subprocess_exec(
                self._python,
                "-I",
                "-u",
                "-B",
                "-c",
                _BOOTSTRAP,
                cwd=workdir,
                env={"PYTHONIOENCODING": "utf-8"},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
                **self._isolation(),
            )
            stderr_task = asyncio.create_task(_drain(proc.stderr))
            try:
                await asyncio.wait_for(self._converse(proc, source, run, read, write), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                raise ScriptError(f"Script timed out after {self._timeout:g}s", logs=run.logs) from exc
            finally:
                await _terminate(proc)
                stderr_text = await stderr_task
                if stderr_text:
                    LOGGER.debug("Script stderr:\n%s", stderr_text)
        return run

    def _drops_privileges(self) -> bool:
        return _is_root() and _reachable_by_others(self._python)

    def _isolation(self) -> dict[str, Any]:
        """Extra process options: resource limits, and a uid drop when running as root."""

        if sys.platform == "win32":
            return {}
        cpu_seconds = max(1, math.ceil(self._timeout)) + 1
        memory_limit = self._memory_limit
        drop = self._drops_privileges()
        libc = _load_libc() if drop else None

        def limit_child() -> None:
            # Runs in the forked child before exec.
            _set_limit(resource.RLIMIT_CPU, cpu_seconds)
            _set_limit(resource.RLIMIT_NOFILE, _OPEN_FILES_LIMIT)
            _set_limit(resource.RLIMIT_FSIZE, 0)
            if memory_limit is not None:
                _set_limit(resource.RLIMIT_AS, memory_limit)
            if libc is not None:
                # Fails without CAP_SYS_ADMIN; the uid drop still applies.
                libc.unshare(CLONE_NEWNET)
            if drop:
                os.setgroups([])
                os.setgid(UNPRIVILEGED_GID)
                os.setuid(UNPRIVILEGED_UID)

        return {"preexec_fn": limit_child}

    async def _converse(
        self,
        proc: asyncio.subprocess.Process,
        source: str,
        run: ScriptRun,
        read: ReadCallback,
        write: WriteCallback,
    ) -> None:
        if proc.stdout is None:
            raise ScriptError("Script process has no output channel", logs=run.logs)
        await _send(proc, {"source": source})
        while True:
            line = await proc.stdout.readline()
            if not line:
                raise ScriptError("Script process exited unexpectedly", logs=run.logs)
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.debug("Ignoring non-protocol sandbox output: %r", line[:200])
                continue
            op = message.get("op")
            if op == "log":
                run.logs.append(str(message.get("text", "")))
            elif op == "read":
                await _send(proc, await _serve(read(str(message.get("path", ""))), key="text"))
            elif op == "write":
                await _send(proc, await _serve(write(str(message.get("path", "")), str(message.get("text", "")))))
            elif op == "error":
                raise ScriptError(str(message.get("message") or "Script failed"), logs=run.logs)
            elif op == "done":
                return
            else:
                LOGGER.debug("Ignoring unknown sandbox message: %s", op)


async def _serve(pending: Awaitable[Any], *, key: str | None = None) -> dict[str, Any]:
    try:
        value = await pending
    except Exception as exc:
        return {"ok": False, "error": str(exc)}
    reply: dict[str, Any] = {"ok": True}
    if key is not None:
        reply[key] = value
    return reply


async def _send(proc: asyncio.subprocess.Process, message: dict[str, Any]) -> None:
    if proc.stdin is None:
        raise ScriptError("Script process has no input channel")
    proc.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
    await proc.stdin.drain()


async def _drain(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


# -----------------------------------------------------------------------------
# Process isolation
# -----------------------------------------------------------------------------


def _is_root() -> bool:
    return sys.platform != "win32" and os.geteuid() == 0


def _reachable_by_others(path: str) -> bool:
    """True when every directory on ``path`` and the file itself are world-executable."""

    for candidate in {os.path.abspath(path), os.path.realpath(path)}:
        current = candidate
        while True:
            try:
                mode = os.stat(current).st_mode
            except OSError:
                return False
            if not mode & 0o001:
                return False
            parent = os.path.dirname(current)
            if parent == current:
                break
            current = parent
    return True


def _load_libc() -> Any:
    name = ctypes.util.find_library("c")
    if name is None:
        return None
    try:
        return ctypes.CDLL(name, use_errno=True)
    except OSError:
        LOGGER.debug("libc could not be loaded; network isolation disabled")
        return None


def _set_limit(kind: int, value: int) -> None:
    try:
        _soft, hard = resource.getrlimit(kind)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(kind, (value, value))
    except (ValueError, OSError):
        # Limit not supported on this platform.
        return


# -----------------------------------------------------------------------------
# Source guard
# -----------------------------------------------------------------------------


class _NameGuard(ast.NodeVisitor):
    def __init__(self) -> None:
        self.violations: list[tuple[str, int]] = []

    def _check(self, name: str, node: ast.AST) -> None:
        if name.startswith("_") or name in _BLOCKED_ATTRIBUTES:
            self.violations.append((name, getattr(node, "lineno", 0)))

    def visit_Name(self, node: ast.Name) -> None:
        self._check(node.id, node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        self._check(node.attr, node)
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        for name in node.kwd_attrs:
            self._check(name, node)
        self.generic_visit(node)


def check_script(source: str) -> None:
    """Reject source that reaches for private names or frame internals.

    Raises:
        ScriptError: the source does not parse, or names something starting
            with an underscore or a frame/code attribute.
    """

    try:
        tree = ast.parse(source, filename="<script>")
    except SyntaxError as exc:
        raise ScriptError(f"SyntaxError: {exc.msg} (line {exc.lineno})") from exc
    guard = _NameGuard()
    guard.visit(tree)
    if guard.violations:
        name, lineno = guard.violations[0]
        raise ScriptError(f"Access to '{name}' is not allowed in scripts (line {lineno})")


# -----------------------------------------------------------------------------
# Typed dialect
# -----------------------------------------------------------------------------


class _AnnotationEraser(ast.NodeTransformer):
    def __init__(self) -> None:
        self.changed = False

    def visit_Import(self, node: ast.Import) -> ast.AST:
        kept = [alias for alias in node.names if alias.name.split(".")[0] not in _TYPING_MODULES]
        if len(kept) == len(node.names):
            return node
        self.changed = True
        if not kept:
            return ast.Pass()
        node.names = kept
        return node

    def visit_ImportFrom(self, node: ast.ImportFrom) -> ast.AST:
        if (node.module or "").split(".")[0] in _TYPING_MODULES:
            self.changed = True
            return ast.Pass()
        return node

    def visit_AnnAssign(self, node: ast.AnnAssign) -> ast.AST:
        self.changed = True
        if node.value is None:
            return ast.Pass()
        return ast.Assign(targets=[node.target], value=self.visit(node.value), lineno=node.lineno)

    def visit_arg(self, node: ast.arg) -> ast.AST:
        if node.annotation is not None:
            self.changed = True
            node.annotation = None
        return node

    def _visit_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> ast.AST:
        if node.returns is not None:
            self.changed = True
            node.returns = None
        self.generic_visit(node)
        return node

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function


def erase_annotations(source: str) -> str:
    """Turn type-annotated script text into plain executable text.

    Annotations are dropped and ``typing``/``__future__`` imports removed, since
    the sandbox has no import machinery. Text without annotations is returned
    unchanged.

    Raises:
        SyntaxError: the text does not parse.
    """

    tree = ast.parse(source, filename="<script>")
    eraser = _AnnotationEraser()
    tree = eraser.visit(tree)
    if not eraser.changed:
        return source
    return ast.unparse(ast.fix_missing_locations(tree))
