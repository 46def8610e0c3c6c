"""
Execution Engine — validates, compiles and invokes plugin entry points.

Validation is static (AST inspection plus a byte-compile) and happens when an
artifact is saved or first used, never at startup. Invocation hands the
normalized source and the encoded capability record to a sandbox worker and
serves the worker's capability calls until it reports a result.
"""

import ast
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional, Union

from config import COMPILE_CACHE_SIZE, INVOKE_TIMEOUT, MAX_TIMEOUT
from plugin_runtime.capabilities import CapabilitySet
from plugin_runtime.errors import (
    CapabilityDenied, CompileError, PluginExecutionError,
)
from plugin_runtime.loader import CodeLoader, LoadedUnit, normalize_source
from plugin_runtime.sandbox import SandboxPool

logger = logging.getLogger(__name__)

# ── Python AST Validation ──

# Builtin names that plugin code must never call
_BLOCKED_BUILTINS = {
    "exec", "eval", "__import__", "compile", "globals", "locals", "vars",
    "getattr", "setattr", "delattr", "breakpoint", "exit", "quit",
    "open", "input", "memoryview", "type", "object", "super",
}

# Introspection attributes that lead from a value back to frames or code
_BLOCKED_ATTRIBUTES = {
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_globals", "f_locals", "f_back", "f_builtins", "f_code",
    "tb_frame", "tb_next", "co_code", "func_globals", "mro",
    # str.format can walk attributes of its arguments
    "format", "format_map",
}

_LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING,
               "error": logging.ERROR}


def validate_source(source: str) -> None:
    """Reject dangerous constructs via AST inspection. Raises CompileError."""
    try:
        tree = ast.parse(source)
    except SyntaxError as e:
        raise CompileError(f"Syntax error at line {e.lineno}: {e.msg}")

    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise CompileError(
                f"Line {node.lineno}: imports are not allowed; use the injected capabilities"
            )

        elif isinstance(node, (ast.ClassDef, ast.Global, ast.Nonlocal)):
            raise CompileError(
                f"Line {node.lineno}: '{type(node).__name__.lower()}' statements are not allowed"
            )

        elif isinstance(node, ast.Call):
            func = node.func
            if isinstance(func, ast.Name) and func.id in _BLOCKED_BUILTINS:
                raise CompileError(f"Line {node.lineno}: '{func.id}()' is not allowed")

        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("_"):
                raise CompileError(
                    f"Line {node.lineno}: attribute '{node.attr}' is not allowed (private access)"
                )
            if node.attr in _BLOCKED_ATTRIBUTES:
                raise CompileError(f"Line {node.lineno}: attribute '{node.attr}' is not allowed")

        elif isinstance(node, ast.Name):
            if node.id.startswith("__"):
                raise CompileError(f"Line {node.lineno}: name '{node.id}' is not allowed")

        # Class patterns read attributes by keyword: case dict(__class__=x)
        elif isinstance(node, ast.MatchClass):
            for attr in node.kwd_attrs:
                if attr.startswith("_") or attr in _BLOCKED_ATTRIBUTES:
                    raise CompileError(
                        f"Line {node.lineno}: attribute '{attr}' is not allowed in a class pattern"
                    )

        elif isinstance(node, (ast.MatchAs, ast.MatchStar, ast.MatchMapping)):
            bound = node.rest if isinstance(node, ast.MatchMapping) else node.name
            if bound and bound.startswith("__"):
                raise CompileError(f"Line {node.lineno}: name '{bound}' is not allowed")

    try:
        compile(tree, "<plugin>", "exec")
    except (SyntaxError, ValueError) as e:
        raise CompileError(f"Compile error: {e}")


@dataclass
class InvocationResult:
    value: object = None
    response: Optional[dict] = None
    duration_ms: int = 0
    logs: list = field(default_factory=list)


class ExecutionEngine:
    """Compiles artifacts once per source hash and runs them in the sandbox pool."""

    def __init__(self, loader: CodeLoader, pool: SandboxPool,
                 default_timeout: float = INVOKE_TIMEOUT,
                 cache_size: int = COMPILE_CACHE_SIZE):
        self.loader = loader
        self.pool = pool
        self.default_timeout = default_timeout
        self._compiled: OrderedDict[str, Union[LoadedUnit, CompileError]] = OrderedDict()
        self._cache_size = cache_size

    def compile(self, artifact: dict) -> LoadedUnit:
        """Normalize, validate and byte-compile an artifact. Failures are cached too."""
        key = f"{artifact['id']}:{artifact['source_hash']}"
        cached = self._compiled.get(key)
        if cached is not None:
            self._compiled.move_to_end(key)
            if isinstance(cached, CompileError):
                raise cached
            return cached
        try:
            unit = self.loader.load_artifact(artifact)
            validate_source(unit.source)
        except CompileError as e:
            e.artifact_id = artifact["id"]
            logger.warning("Compile failed for %s '%s': %s", artifact.get("kind"), artifact.get("key"), e)
            self._remember(key, e)
            raise
        self._remember(key, unit)
        return unit

    def check_source(self, source_text: str) -> str:
        """Validate raw source without an artifact (used before saving). Returns the entry name."""
        source, entry = normalize_source(source_text)
        validate_source(source)
        return entry

    def _remember(self, key: str, value):
        self._compiled[key] = value
        while len(self._compiled) > self._cache_size:
            self._compiled.popitem(last=False)

    async def invoke(self, unit: LoadedUnit, capset: CapabilitySet,
                     timeout: Optional[float] = None) -> InvocationResult:
        """Run the unit's entry point with the capability record.

        Raises ExecutionTimeout, PluginExecutionError, CapabilityDenied or
        CompileError (when the guest itself cannot compile the text).
        """
        timeout = min(float(timeout or self.default_timeout), MAX_TIMEOUT)
        globals_spec, args_spec, targets = capset.encode()
        plugin_logger = logging.getLogger(f"plugin.{capset.plugin.get('slug') or 'unknown'}")
        logs: list = []

        async def on_call(target: str, method: str, args: list, kwargs: dict):
            remote = targets.get(target)
            if remote is None:
                raise CapabilityDenied(f"Unknown capability '{target}'")
            return await remote.call(method, args, kwargs)

        def on_log(level: str, message: str):
            logs.append({"level": level, "message": message[:2000]})
            plugin_logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s",
                              capset.store_id, message[:2000])

        request = {
            "id": uuid.uuid4().hex,
            "op": "invoke",
            "key": unit.cache_key,
            "source": unit.source,
            "entry": unit.entry,
            "globals": globals_spec,
            "args": args_spec,
        }
        started = time.monotonic()
        reply = await self.pool.run(request, on_call, on_log, timeout)
        duration_ms = int((time.monotonic() - started) * 1000)

        if reply.get("op") == "error":
            error_type = reply.get("error_type", "Exception")
            message = reply.get("message", "")
            if reply.get("phase") == "compile":
                raise CompileError(f"Compile error: {message}", artifact_id=unit.artifact_id)
            if error_type == "CapabilityDenied":
                raise CapabilityDenied(message)
            raise PluginExecutionError(message, error_type=error_type)

        return InvocationResult(value=reply.get("value"), response=reply.get("response"),
                                duration_ms=duration_ms, logs=logs)
