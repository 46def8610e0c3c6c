"""
Tests for fire-and-forget event delivery.
"""

import asyncio

from conftest import run_in_runtime
from plugin_runtime.manifest import PluginManifest
from plugin_runtime.tenant import TenantContext, TenantDataHandle

RECORDER = (
    "async def on_order(order, ctx):\n"
    "    await ctx.db.set_data('last_order', order.id)\n"
)


def _subscriber(runtime, slug, source, event="order.created", permissions=("database.write",)):
    plugin = runtime.register_plugin(PluginManifest(name=slug.title(), slug=slug,
                                                    permissions=list(permissions)))
    runtime.save_artifact(slug, "event", event, source)
    runtime.store.install(plugin["id"], "store-1")
    return plugin


def _data(runtime, plugin, key, store_id="store-1"):
    handle = TenantDataHandle(TenantContext(store_id), runtime.tenants, plugin["id"])
    return handle.get_data(key)


class TestEventDispatcher:

    def test_emit_returns_before_handlers_finish(self, runtime):
        plugin = _subscriber(runtime, "recorder", RECORDER)

        async def scenario():
            scheduled = runtime.events.emit("store-1", "order.created", {"id": "o-1"})
            in_flight = runtime.events.in_flight
            await runtime.events.drain()
            return scheduled, in_flight

        scheduled, in_flight = run_in_runtime(runtime, scenario)
        assert scheduled == 1
        assert in_flight == 1
        assert _data(runtime, plugin, "last_order") == "o-1"
        assert runtime.events.delivered == 1

    def test_no_subscribers(self, runtime):
        async def scenario():
            return runtime.events.emit("store-1", "order.refunded", {})

        assert run_in_runtime(runtime, scenario) == 0

    def test_failing_handler_does_not_affect_siblings(self, runtime):
        _subscriber(runtime, "crasher", "def on_order(order, ctx):\n    raise RuntimeError('nope')\n")
        plugin = _subscriber(runtime, "recorder", RECORDER)

        async def scenario():
            runtime.events.emit("store-1", "order.created", {"id": "o-2"})
            await runtime.events.drain()

        run_in_runtime(runtime, scenario)
        assert _data(runtime, plugin, "last_order") == "o-2"
        assert runtime.events.delivered == 1
        assert runtime.events.failed == 1

    def test_events_are_store_scoped(self, runtime):
        plugin = _subscriber(runtime, "recorder", RECORDER)

        async def scenario():
            scheduled = runtime.events.emit("store-2", "order.created", {"id": "o-3"})
            await asyncio.sleep(0)
            await runtime.events.drain()
            return scheduled

        assert run_in_runtime(runtime, scenario) == 0
        assert _data(runtime, plugin, "last_order") is None
