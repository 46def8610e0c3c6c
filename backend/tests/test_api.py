"""
HTTP tests for the admin and storefront endpoints, through FastAPI's TestClient.

The app is built around the temp-dir runtime fixture; the lifespan starts and
stops its sandbox pool.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import API_KEY
from main import create_app

ADMIN = {"X-API-Key": API_KEY}
STORE = {"x-store-id": "store-1"}
BOTH = {**ADMIN, **STORE}

ORDER_CONTROLLER = (
    "def show(request, response, ctx):\n"
    "    return {'order': request.params.id, 'store': ctx.store_id}\n"
)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as c:
        yield c


def _register(client, slug="orders", **manifest):
    resp = client.post("/api/plugins", headers=ADMIN,
                       json={"name": slug.title(), "slug": slug, **manifest})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _save(client, slug, kind, key, source, **fields):
    return client.put(f"/api/plugins/{slug}/artifacts", headers=ADMIN,
                      json={"kind": kind, "key": key, "source": source, **fields})


class TestPublicEndpoints:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "runtime_ready": True}
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_config(self, client):
        data = client.get("/api/config").json()
        assert "controller" in data["artifact_kinds"]
        assert data["hook_points"]["cart.getCurrencySymbol"] == "string"
        assert "Card" in data["ui_components"]


class TestAdminAuth:

    def test_api_key_required(self, client):
        assert client.get("/api/plugins").status_code == 401
        assert client.get("/api/plugins", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/api/plugins", headers=ADMIN).status_code == 200

    def test_failures_are_audited(self, client):
        client.get("/api/status")
        entries = client.get("/api/audit", headers=ADMIN, params={"event_type": "auth_failure"}).json()
        assert entries and entries[0]["endpoint"] == "/api/status"


class TestPluginManagement:

    def test_register_and_get(self, client):
        plugin = _register(client, permissions=["database.write"])
        assert plugin["slug"] == "orders"
        assert plugin["status"] == "active"

        assert _save(client, "orders", "controller", "/orders/:id", ORDER_CONTROLLER,
                     method="get").status_code == 200
        detail = client.get("/api/plugins/orders", headers=ADMIN).json()
        assert [(a["kind"], a["key"], a["method"]) for a in detail["artifacts"]] == [
            ("controller", "/orders/:id", "GET")]
        assert "source_text" not in detail["artifacts"][0]

    def test_invalid_slug(self, client):
        resp = client.post("/api/plugins", headers=ADMIN, json={"name": "Bad", "slug": "Bad Slug"})
        assert resp.status_code == 422

    def test_unknown_plugin(self, client):
        assert client.get("/api/plugins/ghost", headers=ADMIN).status_code == 404

    def test_rejected_source_is_not_saved(self, client):
        _register(client)
        resp = _save(client, "orders", "controller", "/orders",
                     "def index(request, response, ctx):\n    import os\n    return os.listdir('/')\n")
        assert resp.status_code == 422
        assert "imports" in resp.json()["detail"]
        assert client.get("/api/plugins/orders/artifacts", headers=ADMIN).json() == []

    def test_unknown_hook_point(self, client):
        _register(client)
        resp = _save(client, "orders", "hook", "cart.nope", "def f(v, ctx):\n    return v\n")
        assert resp.status_code == 422

    def test_delete_refused_while_installed(self, client):
        _register(client)
        assert client.post("/api/plugins/orders/install", headers=BOTH).json()["created"] is True
        assert client.delete("/api/plugins/orders", headers=ADMIN).status_code == 409

        assert client.post("/api/plugins/orders/uninstall", headers=BOTH).status_code == 200
        assert client.delete("/api/plugins/orders", headers=ADMIN).status_code == 200
        assert client.get("/api/plugins/orders", headers=ADMIN).status_code == 404

    def test_install_requires_store(self, client):
        _register(client)
        assert client.post("/api/plugins/orders/install", headers=ADMIN).status_code == 401


class TestControllerEndpoint:

    @pytest.fixture
    def installed(self, client):
        _register(client)
        _save(client, "orders", "controller", "/orders/:id", ORDER_CONTROLLER, method="GET")
        client.post("/api/plugins/orders/install", headers=BOTH)

    def test_exec(self, client, installed):
        resp = client.get("/api/plugins/orders/exec/orders/7", headers=STORE)
        assert resp.status_code == 200
        assert resp.json() == {"order": "7", "store": "store-1"}

    def test_exec_without_store(self, client, installed):
        resp = client.get("/api/plugins/orders/exec/orders/7")
        assert resp.status_code == 401
        entries = client.get("/api/audit", headers=ADMIN,
                             params={"event_type": "tenant_rejected"}).json()
        assert entries

    def test_exec_unknown_route(self, client, installed):
        resp = client.post("/api/plugins/orders/exec/orders/7", headers=STORE, json={})
        assert resp.status_code == 404
        assert resp.json()["availableControllers"] == ["GET /orders/:id"]


class TestStorefrontEndpoints:

    def test_hooks_path_is_not_a_slug(self, client):
        resp = client.get("/api/plugins/hooks", headers=STORE)
        assert resp.status_code == 200
        names = [h["name"] for h in resp.json()]
        assert "cart.processLoadedItems" in names
        assert all(h["handlers"] == [] for h in resp.json())

    def test_hooks_need_store(self, client):
        assert client.get("/api/plugins/hooks").status_code == 401

    def test_apply_hook(self, client):
        _register(client, slug="currency")
        _save(client, "currency", "hook", "cart.getCurrencySymbol",
              "def symbol(value, ctx):\n    return 'EUR'\n")
        client.post("/api/plugins/currency/install", headers=BOTH)

        resp = client.post("/api/plugins/hooks/cart.getCurrencySymbol", headers=STORE,
                           json={"input": "$"})
        body = resp.json()
        assert body["success"] is True
        assert body["data"] == "EUR"
        assert body["hooksExecuted"] == 1
        assert body["hookExecutions"][0]["status"] == "applied"

        other = client.post("/api/plugins/hooks/cart.getCurrencySymbol",
                            headers={"x-store-id": "store-2"}, json={"input": "$"})
        assert other.json()["data"] == "$"

    def test_emit_event_without_subscribers(self, client):
        resp = client.post("/api/plugins/events/order.created", headers=STORE, json={"payload": {"id": 1}})
        assert resp.json() == {"success": True, "event": "order.created", "handlersScheduled": 0}


class TestMigrationEndpoints:

    def test_analyze(self, client):
        resp = client.post("/api/plugins/migrations/analyze", headers=ADMIN,
                           json={"sql": "DROP TABLE legacy;"})
        assert resp.status_code == 200
        assert resp.json()["warnings"]

    def test_register_and_apply(self, client):
        _register(client, slug="reviews")
        created = client.post("/api/plugins/reviews/migrations", headers=ADMIN,
                              json={"name": "init", "version": "1.0.0",
                                    "sql": "CREATE TABLE reviews (id INTEGER PRIMARY KEY);"})
        assert created.status_code == 200
        duplicate = client.post("/api/plugins/reviews/migrations", headers=ADMIN,
                                json={"name": "again", "version": "1.0.0", "sql": "SELECT 1;"})
        assert duplicate.status_code == 409

        applied = client.post("/api/plugins/reviews/migrations/apply-pending", headers=BOTH).json()
        assert [r["status"] for r in applied["results"]] == ["applied"]
        listed = client.get("/api/plugins/reviews/migrations", headers=BOTH).json()
        assert listed[0]["status"] == "applied"

    def test_transaction_control_rejected(self, client):
        _register(client, slug="reviews")
        resp = client.post("/api/plugins/reviews/migrations", headers=ADMIN,
                           json={"name": "bad", "version": "1.0.0", "sql": "BEGIN; SELECT 1;"})
        assert resp.status_code == 422
