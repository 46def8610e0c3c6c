"""
Tests for plugin source validation and sandboxed invocation.

The invocation tests start real guest processes from the runtime fixture.
"""

from unittest.mock import MagicMock

import pytest

from conftest import run_in_runtime
from plugin_runtime.capabilities import CapabilitySet
from plugin_runtime.engine import ExecutionEngine, validate_source
from plugin_runtime.errors import (
    CapabilityDenied, CompileError, ExecutionTimeout, PluginExecutionError,
)
from plugin_runtime.loader import CodeLoader
from plugin_runtime.manifest import PluginManifest


# ── Static validation ──

class TestValidateSource:
    """Dangerous constructs are rejected before any code runs."""

    def test_allows_plain_handler(self):
        validate_source(
            "async def handle(items, ctx):\n"
            "    input = [i for i in items if i.quantity > 0]\n"
            "    log.info('kept', len(input))\n"
            "    return input\n"
        )

    def test_blocks_nested_import(self):
        with pytest.raises(CompileError, match="imports"):
            validate_source("def f(v):\n    import os\n    return v\n")

    def test_blocks_class_definition(self):
        with pytest.raises(CompileError, match="classdef"):
            validate_source("class Evil:\n    pass\n")

    def test_blocks_global(self):
        with pytest.raises(CompileError, match="global"):
            validate_source("def f(v):\n    global counter\n    return v\n")

    @pytest.mark.parametrize("call", ["eval('1')", "exec('x=1')", "open('/etc/passwd')",
                                      "getattr(v, 'x')", "type(v)", "__import__('os')"])
    def test_blocks_builtin_calls(self, call):
        with pytest.raises(CompileError):
            validate_source(f"def f(v):\n    return {call}\n")

    def test_blocks_private_attribute(self):
        with pytest.raises(CompileError, match="private"):
            validate_source("def f(v):\n    return v.__class__\n")

    def test_blocks_frame_walking(self):
        with pytest.raises(CompileError, match="gi_frame"):
            validate_source("def f(v):\n    g = (x for x in v)\n    return g.gi_frame\n")

    def test_blocks_str_format(self):
        with pytest.raises(CompileError, match="format"):
            validate_source("def f(v):\n    return '{0.x}'.format(v)\n")

    def test_blocks_dunder_names(self):
        with pytest.raises(CompileError, match="__builtins__"):
            validate_source("def f(v):\n    return __builtins__\n")

    @pytest.mark.parametrize("pattern", ["dict(__class__=cls)", "dict(_secret=s)",
                                         "dict(gi_frame=f)"])
    def test_blocks_class_pattern_attributes(self, pattern):
        with pytest.raises(CompileError, match="class pattern"):
            validate_source(f"def f(v, ctx):\n    match ctx:\n        case {pattern}:\n"
                            f"            return 1\n    return v\n")

    def test_blocks_dunder_capture_names(self):
        with pytest.raises(CompileError, match="__builtins__"):
            validate_source("def f(v):\n    match v:\n        case [*__builtins__]:\n"
                            "            return 1\n    return v\n")

    def test_allows_plain_match(self):
        validate_source("def f(v):\n    match v:\n        case {'kind': kind, **rest}:\n"
                        "            return kind\n        case dict(total=t):\n            return t\n"
                        "    return v\n")

    def test_syntax_error(self):
        with pytest.raises(CompileError, match="Syntax error"):
            validate_source("def f(:\n")


class TestCompileCache:

    def test_check_source_returns_entry(self, store):
        engine = ExecutionEngine(CodeLoader(store), MagicMock())
        assert engine.check_source("export default def render(props):\n    return None\n") == "render"

    def test_compile_failure_is_cached(self, store, make_plugin):
        plugin = make_plugin("bad-widget")
        artifact = store.save_artifact(plugin["id"], "widget", "w", "def render(p):\n    return eval('1')\n")
        engine = ExecutionEngine(CodeLoader(store), MagicMock())
        with pytest.raises(CompileError) as first:
            engine.compile(artifact)
        with pytest.raises(CompileError) as second:
            engine.compile(artifact)
        assert first.value is second.value
        assert first.value.artifact_id == artifact["id"]

    def test_compiled_unit_is_reused(self, store, make_plugin):
        plugin = make_plugin("ok-widget")
        artifact = store.save_artifact(plugin["id"], "widget", "w", "def render(p):\n    return None\n")
        engine = ExecutionEngine(CodeLoader(store), MagicMock())
        assert engine.compile(artifact) is engine.compile(artifact)


# ── Sandboxed invocation ──

class TestSandboxInvocation:

    def _unit(self, runtime, source, permissions=()):
        runtime.register_plugin(PluginManifest(name="Calc", slug="calc", permissions=list(permissions)))
        artifact = runtime.save_artifact("calc", "event", "order.created", source)
        return runtime.engine.compile(artifact)

    def _capset(self, args):
        return CapabilitySet(kind="event", plugin={"slug": "calc"}, store_id="store-1", args=args)

    def test_returns_value_and_logs(self, runtime):
        unit = self._unit(runtime, "def handle(payload, ctx):\n"
                                   "    log.info('total', payload.total)\n"
                                   "    print('printed')\n"
                                   "    return payload.total * 2\n")

        async def scenario():
            return await runtime.engine.invoke(unit, self._capset([{"total": 21}, {}]))

        result = run_in_runtime(runtime, scenario)
        assert result.value == 42
        assert [entry["message"] for entry in result.logs] == ["total 21", "printed"]

    def test_async_entry_point(self, runtime):
        unit = self._unit(runtime, "async def handle(payload, ctx):\n    return sorted(payload)\n")

        async def scenario():
            return await runtime.engine.invoke(unit, self._capset([[3, 1, 2], {}]))

        assert run_in_runtime(runtime, scenario).value == [1, 2, 3]

    def test_plugin_exception(self, runtime):
        unit = self._unit(runtime, "def handle(payload, ctx):\n    return 1 / 0\n")

        async def scenario():
            with pytest.raises(PluginExecutionError) as exc:
                await runtime.engine.invoke(unit, self._capset([{}, {}]))
            return exc.value

        assert run_in_runtime(runtime, scenario).error_type == "ZeroDivisionError"

    def test_builtins_outside_whitelist_are_missing(self, runtime):
        unit = self._unit(runtime, "def handle(payload, ctx):\n    return dir()\n")

        async def scenario():
            with pytest.raises(PluginExecutionError) as exc:
                await runtime.engine.invoke(unit, self._capset([{}, {}]))
            return exc.value

        assert run_in_runtime(runtime, scenario).error_type == "NameError"

    def test_timeout_kills_worker_and_pool_recovers(self, runtime):
        spin = self._unit(runtime, "def handle(payload, ctx):\n    while True:\n        pass\n")

        async def scenario():
            with pytest.raises(ExecutionTimeout):
                await runtime.engine.invoke(spin, self._capset([{}, {}]), timeout=0.5)
            ok = runtime.save_artifact("calc", "event", "order.paid",
                                       "def handle(payload, ctx):\n    return 'alive'\n")
            results = []
            # More calls than workers: every worker is usable again
            for _ in range(3):
                result = await runtime.engine.invoke(runtime.engine.compile(ok), self._capset([{}, {}]))
                results.append(result.value)
            return results

        assert run_in_runtime(runtime, scenario) == ["alive", "alive", "alive"]
        assert runtime.pool.stats()["restarts"] >= 1

    def test_capability_denied_without_permission(self, runtime):
        unit = self._unit(runtime, "async def handle(payload, ctx):\n"
                                   "    await ctx.db.set_data('visits', 1)\n")

        async def scenario():
            plugin = runtime.store.get_plugin("calc")
            capset = runtime.injector.for_event("store-1", plugin, "order.created", {})
            with pytest.raises(CapabilityDenied, match="database.write"):
                await runtime.engine.invoke(unit, capset)

        run_in_runtime(runtime, scenario)

    def test_capability_round_trip(self, runtime):
        unit = self._unit(runtime, "async def handle(payload, ctx):\n"
                                   "    await ctx.db.set_data('visits', payload.count)\n"
                                   "    return await ctx.db.get_data('visits')\n",
                          permissions=["database.write"])

        async def scenario():
            plugin = runtime.store.get_plugin("calc")
            capset = runtime.injector.for_event("store-1", plugin, "order.created", {"count": 3})
            return await runtime.engine.invoke(unit, capset)

        assert run_in_runtime(runtime, scenario).value == 3
