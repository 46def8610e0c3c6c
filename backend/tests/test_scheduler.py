"""
Tests for the plugin cron scheduler. The engine is mocked: these tests are
about dispatch, single-flight and bookkeeping, not plugin execution.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.errors import PluginExecutionError
from plugin_runtime.scheduler import PluginScheduler

T0 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)


@pytest.fixture
def setup(store, tenants, make_plugin):
    plugin = make_plugin("nightly-sync")
    artifact = store.save_artifact(plugin["id"], "cron", "sync", "def run(ctx):\n    return None\n")
    store.install(plugin["id"], "store-1")
    engine = MagicMock()
    scheduler = PluginScheduler(store, engine, CapabilityInjector(tenants), default_max_failures=2)
    return scheduler, engine, plugin, artifact


def _create(scheduler, plugin, artifact, expression="* * * * *", **kw):
    return scheduler.create_job(plugin["id"], "store-1", "sync", expression, artifact["id"], now=T0, **kw)


class TestJobCrud:

    def test_create_computes_next_run(self, setup):
        scheduler, _, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact, "0 3 * * *")
        assert job["next_run_at"] == "2024-01-01T03:00:00+00:00"
        assert job["is_enabled"] is True
        assert job["max_failures"] == 2

    def test_duplicate_name(self, setup):
        scheduler, _, plugin, artifact = setup
        _create(scheduler, plugin, artifact)
        with pytest.raises(ValueError, match="already exists"):
            _create(scheduler, plugin, artifact)

    def test_bad_expression(self, setup):
        scheduler, _, plugin, artifact = setup
        with pytest.raises(ValueError):
            _create(scheduler, plugin, artifact, "every day")

    def test_update_expression_recomputes_next_run(self, setup):
        scheduler, _, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact)
        job = scheduler.update_job(job["id"], now=T0, cron_expression="@hourly", params={"full": True})
        assert job["next_run_at"] == "2024-01-01T01:00:00+00:00"
        assert job["params"] == {"full": True}

    def test_delete(self, setup):
        scheduler, _, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact)
        assert scheduler.delete_job(job["id"])
        assert scheduler.get_job(job["id"]) is None
        assert not scheduler.delete_job(job["id"])


class TestDispatch:

    def test_not_due_yet(self, setup):
        scheduler, engine, plugin, artifact = setup
        _create(scheduler, plugin, artifact, "0 3 * * *")

        async def scenario():
            return scheduler.tick(now=T0 + MINUTE)

        assert asyncio.run(scenario()) == []

    def test_single_flight(self, setup):
        scheduler, engine, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact)
        calls = []

        async def scenario():
            gate = asyncio.Event()

            async def slow_invoke(unit, capset, timeout=None):
                calls.append(capset)
                await gate.wait()

            engine.invoke = slow_invoke
            first = scheduler.tick(now=T0 + MINUTE)
            await asyncio.sleep(0)
            second = scheduler.tick(now=T0 + MINUTE + timedelta(seconds=30))
            manual = await scheduler.run_now(job["id"])
            gate.set()
            await scheduler.wait_idle()
            await scheduler.injector.aclose()
            return first, second, manual

        first, second, manual = asyncio.run(scenario())
        assert first == [job["id"]]
        assert second == []
        assert manual["status"] == "skipped"
        assert len(calls) == 1

        job = scheduler.get_job(job["id"])
        assert job["run_count"] == 1
        assert job["last_status"] == "success"
        assert job["next_run_at"] == "2024-01-01T00:02:00+00:00"
        assert scheduler.running_jobs == set()

    def test_job_context(self, setup):
        scheduler, engine, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact, params={"batch": 50})
        seen = []

        async def scenario():
            async def invoke(unit, capset, timeout=None):
                seen.append((capset, timeout))

            engine.invoke = invoke
            await scheduler.run_now(job["id"])
            await scheduler.injector.aclose()

        asyncio.run(scenario())
        capset, timeout = seen[0]
        assert capset.kind == "cron"
        assert capset.store_id == "store-1"
        context = capset.args[0]
        assert context.fields["params"] == {"batch": 50}
        assert context.fields["job"]["name"] == "sync"
        assert timeout == job["timeout_seconds"]

    def test_consecutive_failures_pause_job(self, setup):
        scheduler, engine, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact)

        async def failing(unit, capset, timeout=None):
            raise PluginExecutionError("upstream down")

        async def scenario():
            engine.invoke = failing
            dispatched = []
            for i in range(1, 4):
                dispatched.append(scheduler.tick(now=T0 + i * MINUTE))
                await scheduler.wait_idle()
            await scheduler.injector.aclose()
            return dispatched

        dispatched = asyncio.run(scenario())
        assert dispatched == [[job["id"]], [job["id"]], []]
        paused = scheduler.get_job(job["id"])
        assert paused["consecutive_failures"] == 2
        assert paused["failure_count"] == 2
        assert "upstream down" in paused["last_error"]

        resumed = scheduler.update_job(job["id"], is_enabled=True)
        assert resumed["consecutive_failures"] == 0

    def test_disabled_install_is_not_dispatched(self, setup):
        scheduler, engine, plugin, artifact = setup
        _create(scheduler, plugin, artifact)
        scheduler.store.set_install_enabled(plugin["id"], "store-1", False)

        async def scenario():
            return scheduler.tick(now=T0 + MINUTE)

        assert asyncio.run(scenario()) == []

    def test_disabled_job_is_not_dispatched(self, setup):
        scheduler, engine, plugin, artifact = setup
        job = _create(scheduler, plugin, artifact)
        scheduler.update_job(job["id"], is_enabled=False)

        async def scenario():
            return scheduler.tick(now=T0 + MINUTE)

        assert asyncio.run(scenario()) == []
