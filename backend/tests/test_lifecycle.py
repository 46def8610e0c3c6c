"""
Tests for per-store install lifecycle: migrations on install, callbacks, config updates.
"""

import pytest

from conftest import run_in_runtime
from plugin_runtime.errors import ArtifactNotFound
from plugin_runtime.manifest import PluginManifest
from plugin_runtime.tenant import TenantContext, TenantDataHandle

CREATE_SETTINGS = "CREATE TABLE review_settings (name TEXT PRIMARY KEY, value INTEGER);"


@pytest.fixture
def plugin(runtime):
    plugin = runtime.register_plugin(PluginManifest(name="Reviews", slug="reviews",
                                                    permissions=["database.write"]))
    runtime.migrations.register(plugin["id"], "settings table", "1.0.0", CREATE_SETTINGS)
    runtime.save_artifact("reviews", "lifecycle", "install",
                          "async def on_install(ctx):\n"
                          "    await ctx.db.insert('review_settings',\n"
                          "                        {'name': 'stars', 'value': ctx.config.get('stars', 5)})\n")
    return plugin


def _data(runtime, plugin, key):
    handle = TenantDataHandle(TenantContext("store-1"), runtime.tenants, plugin["id"])
    return handle.get_data(key)


class TestInstall:

    def test_install_runs_migrations_then_callback(self, runtime, plugin):
        async def scenario():
            return await runtime.lifecycle.install("reviews", "store-1", {"stars": 4})

        result = run_in_runtime(runtime, scenario)
        assert result["created"] is True
        assert [m["status"] for m in result["migrations"]] == ["applied"]
        assert result["callback"] == {"callback": "install", "ran": True, "ok": True}

        with runtime.tenants.connect(TenantContext("store-1")) as conn:
            row = conn.execute("SELECT value FROM review_settings WHERE name = 'stars'").fetchone()
        assert row["value"] == 4

    def test_reinstall_is_a_no_op(self, runtime, plugin):
        async def scenario():
            await runtime.lifecycle.install("reviews", "store-1")
            return await runtime.lifecycle.install("reviews", "store-1", {"stars": 1})

        again = run_in_runtime(runtime, scenario)
        assert again["created"] is False
        assert again["callback"]["ran"] is False
        assert again["install"]["config"] == {}

    def test_unknown_plugin(self, runtime):
        async def scenario():
            with pytest.raises(ArtifactNotFound):
                await runtime.lifecycle.install("ghost", "store-1")

        run_in_runtime(runtime, scenario)


class TestStateChanges:

    def test_failing_callback_keeps_state_change(self, runtime, plugin):
        runtime.save_artifact("reviews", "lifecycle", "disable",
                              "def on_disable(ctx):\n    raise RuntimeError('cleanup failed')\n")

        async def scenario():
            await runtime.lifecycle.install("reviews", "store-1")
            return await runtime.lifecycle.set_enabled("reviews", "store-1", False)

        result = run_in_runtime(runtime, scenario)
        assert result["install"]["is_enabled"] is False
        assert result["callback"]["ok"] is False
        assert "cleanup failed" in result["callback"]["error"]
        assert runtime.store.get_install(plugin["id"], "store-1")["is_enabled"] is False

    def test_config_update_sees_previous_config(self, runtime, plugin):
        runtime.save_artifact("reviews", "lifecycle", "config_update",
                              "async def on_config(ctx):\n"
                              "    await ctx.db.set_data('change', {'new': ctx.config,\n"
                              "                                     'old': ctx.previous_config})\n")

        async def scenario():
            await runtime.lifecycle.install("reviews", "store-1", {"stars": 3})
            return await runtime.lifecycle.update_config("reviews", "store-1", {"stars": 5})

        result = run_in_runtime(runtime, scenario)
        assert result["install"]["config"] == {"stars": 5}
        assert result["callback"]["ok"] is True
        assert _data(runtime, plugin, "change") == {"new": {"stars": 5}, "old": {"stars": 3}}

    def test_uninstall(self, runtime, plugin):
        runtime.save_artifact("reviews", "lifecycle", "uninstall",
                              "async def on_uninstall(ctx):\n    await ctx.db.set_data('bye', True)\n")

        async def scenario():
            await runtime.lifecycle.install("reviews", "store-1")
            result = await runtime.lifecycle.uninstall("reviews", "store-1")
            with pytest.raises(ArtifactNotFound):
                await runtime.lifecycle.uninstall("reviews", "store-1")
            return result

        result = run_in_runtime(runtime, scenario)
        assert result["callback"]["ok"] is True
        assert runtime.store.get_install(plugin["id"], "store-1") is None
        assert _data(runtime, plugin, "bye") is True

    def test_enable_requires_install(self, runtime, plugin):
        async def scenario():
            with pytest.raises(ArtifactNotFound):
                await runtime.lifecycle.set_enabled("reviews", "store-1", True)

        run_in_runtime(runtime, scenario)
