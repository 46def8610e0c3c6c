"""
Tests for controller routing and invocation.
"""

import asyncio
from unittest.mock import MagicMock

from conftest import run_in_runtime
from plugin_runtime.controllers import (
    DEFAULT_BODY, ControllerInvoker, find_controller, match_route, normalize_path,
)
from plugin_runtime.manifest import PluginManifest

STORE = {"x-store-id": "store-1"}


class TestRouting:

    def test_normalize_path(self):
        assert normalize_path("orders/") == "/orders"
        assert normalize_path("") == "/"

    def test_match_route_captures_params(self):
        assert match_route("/orders/:id", "/orders/42") == {"id": "42"}
        assert match_route("/orders/:id", "/orders") is None
        assert match_route("/orders/:id/items", "/orders/42/lines") is None

    def test_exact_path_wins_over_pattern(self):
        controllers = [
            {"key": "/orders/:id", "method": "GET", "enabled": True},
            {"key": "/orders/summary", "method": "GET", "enabled": True},
        ]
        controller, params = find_controller(controllers, "get", "/orders/summary")
        assert controller["key"] == "/orders/summary"
        assert params == {}

    def test_method_and_enabled_filter(self):
        controllers = [
            {"key": "/orders", "method": "POST", "enabled": True},
            {"key": "/orders", "method": "GET", "enabled": False},
        ]
        assert find_controller(controllers, "GET", "/orders") == (None, {})


class TestStoreRequired:

    def test_missing_store_never_reaches_plugin_code(self, store):
        engine = MagicMock()
        invoker = ControllerInvoker(store, engine, MagicMock())
        result = asyncio.run(invoker.invoke("any-plugin", "/orders", "GET", {}))
        assert result.status == 401
        assert not engine.compile.called
        assert not engine.invoke.called

    def test_invalid_store_is_rejected(self, store):
        engine = MagicMock()
        invoker = ControllerInvoker(store, engine, MagicMock())
        result = asyncio.run(invoker.invoke("any-plugin", "/orders", "GET", {"X-Store-Id": "../other"}))
        assert result.status == 401
        assert not engine.invoke.called


class TestControllerInvocation:

    def _plugin(self, runtime, controllers, install=True):
        plugin = runtime.register_plugin(PluginManifest(name="Orders", slug="orders"))
        for method, path, source in controllers:
            runtime.save_artifact("orders", "controller", path, source, method=method)
        if install:
            runtime.store.install(plugin["id"], "store-1")
        return plugin

    def test_return_value_becomes_body(self, runtime):
        self._plugin(runtime, [("GET", "/orders/:id",
                                "def show(request, response, ctx):\n"
                                "    return {'id': request.params.id, 'store': ctx.store_id,\n"
                                "            'q': request.query.get('expand')}\n")])

        async def scenario():
            return await runtime.controllers.invoke("orders", "orders/7", "GET", STORE,
                                                    query={"expand": "lines"})

        result = run_in_runtime(runtime, scenario)
        assert result.status == 200
        assert result.body == {"id": "7", "store": "store-1", "q": "lines"}

    def test_explicit_response(self, runtime):
        self._plugin(runtime, [("POST", "/orders",
                                "def create(request, response, ctx):\n"
                                "    if not request.body.get('sku'):\n"
                                "        return response.status(400).json({'error': 'sku required'})\n"
                                "    response.status(201).json({'created': request.body.sku})\n")])

        async def scenario():
            bad = await runtime.controllers.invoke("orders", "/orders", "POST", STORE, body={})
            good = await runtime.controllers.invoke("orders", "/orders", "POST", STORE, body={"sku": "A1"})
            return bad, good

        bad, good = run_in_runtime(runtime, scenario)
        assert (bad.status, bad.body) == (400, {"error": "sku required"})
        assert (good.status, good.body) == (201, {"created": "A1"})

    def test_default_body(self, runtime):
        self._plugin(runtime, [("DELETE", "/cache", "def clear(request, response, ctx):\n    pass\n")])

        async def scenario():
            return await runtime.controllers.invoke("orders", "/cache", "DELETE", STORE)

        result = run_in_runtime(runtime, scenario)
        assert (result.status, result.body) == (200, DEFAULT_BODY)

    def test_unknown_plugin(self, runtime):
        async def scenario():
            return await runtime.controllers.invoke("ghost", "/x", "GET", STORE)

        assert run_in_runtime(runtime, scenario).status == 404

    def test_not_installed_for_store(self, runtime):
        self._plugin(runtime, [("GET", "/orders", "def index(request, response, ctx):\n    return []\n")],
                     install=False)

        async def scenario():
            return await runtime.controllers.invoke("orders", "/orders", "GET", STORE)

        assert run_in_runtime(runtime, scenario).status == 403

    def test_unknown_route_lists_available(self, runtime):
        self._plugin(runtime, [("GET", "/orders", "def index(request, response, ctx):\n    return []\n")])

        async def scenario():
            return await runtime.controllers.invoke("orders", "/refunds", "GET", STORE)

        result = run_in_runtime(runtime, scenario)
        assert result.status == 404
        assert result.body["availableControllers"] == ["GET /orders"]

    def test_plugin_error_is_500(self, runtime):
        self._plugin(runtime, [("GET", "/boom", "def boom(request, response, ctx):\n    raise ValueError('bad')\n")])

        async def scenario():
            return await runtime.controllers.invoke("orders", "/boom", "GET", STORE)

        result = run_in_runtime(runtime, scenario)
        assert result.status == 500
        assert "bad" in result.body["error"]

    def test_timeout_is_504(self, runtime, monkeypatch):
        self._plugin(runtime, [("GET", "/spin",
                                "def spin(request, response, ctx):\n    while True:\n        pass\n")])
        monkeypatch.setattr(runtime.engine, "default_timeout", 0.5)

        async def scenario():
            return await runtime.controllers.invoke("orders", "/spin", "GET", STORE)

        result = run_in_runtime(runtime, scenario)
        assert result.status == 504
        assert result.body["success"] is False
        assert "error" in result.body

    def test_secret_headers_are_hidden(self, runtime):
        self._plugin(runtime, [("GET", "/headers",
                                "def show(request, response, ctx):\n    return sorted(request.headers.keys())\n")])

        async def scenario():
            headers = {**STORE, "X-API-Key": "secret", "Cookie": "a=b", "Accept": "json"}
            return await runtime.controllers.invoke("orders", "/headers", "GET", headers)

        assert run_in_runtime(runtime, scenario).body == ["accept", "x-store-id"]
