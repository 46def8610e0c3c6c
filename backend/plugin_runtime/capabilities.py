"""
Capability Injector — builds the per-invocation capability record.

Plugin code sees exactly the names handed to it here plus a whitelist of safe
builtins. Host objects never cross into the sandbox: they are described by a
small spec (`remote`, `ui`, `response`, `namespace`, `value`) and calls on
remote objects travel back over the worker pipe to the `Remote` wrappers kept
on the host side.

Every record is built for one resolved TenantContext. The `db` handle and the
`api` client are bound to that store and cannot be re-pointed by plugin code.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from config import API_BASE_URL, HTTP_TIMEOUT, STORE_HEADER
from plugin_runtime.errors import CapabilityDenied, TenantIsolationError
from plugin_runtime.tenant import TenantContext, TenantDatabases, TenantDataHandle
from plugin_runtime.ui_primitives import UI_REGISTRY, UiRegistry

logger = logging.getLogger(__name__)

API_PERMISSION = "api.access"


# ── Host-side capability objects ──

class Remote:
    """A host object whose whitelisted methods plugin code may await."""

    def __init__(self, name: str, target: Any, methods: tuple):
        self.name = name
        self.target = target
        self.methods = tuple(methods)

    async def call(self, method: str, args: list, kwargs: dict):
        if method not in self.methods:
            raise CapabilityDenied(f"'{self.name}.{method}' is not an available capability")
        fn = getattr(self.target, method)
        if inspect.iscoroutinefunction(fn):
            return await fn(*args, **kwargs)
        return await asyncio.to_thread(fn, *args, **kwargs)


class Namespace:
    """A record of named capabilities, readable as `ctx.db` or `ctx["db"]` in plugin code."""

    def __init__(self, **fields):
        self.fields = fields


class ResponseSlot:
    """Placeholder for the controller `response` object built inside the sandbox."""
    pass


def encode_spec(value: Any, targets: dict) -> dict:
    """Describe a capability value for the sandbox, collecting remotes into `targets`."""
    if isinstance(value, Remote):
        targets[value.name] = value
        return {"type": "remote", "name": value.name, "methods": list(value.methods)}
    if isinstance(value, UiRegistry):
        return {"type": "ui", "components": sorted(value.components)}
    if isinstance(value, ResponseSlot):
        return {"type": "response"}
    if isinstance(value, Namespace):
        return {"type": "namespace",
                "fields": {k: encode_spec(v, targets) for k, v in value.fields.items()}}
    return {"type": "value", "value": value}


@dataclass
class CapabilitySet:
    kind: str
    plugin: dict
    store_id: str
    globals: dict = field(default_factory=dict)
    args: list = field(default_factory=list)

    def encode(self) -> tuple[dict, list, dict]:
        """Return (globals spec, args spec, remote targets by name)."""
        targets: dict[str, Remote] = {}
        globals_spec = {k: encode_spec(v, targets) for k, v in self.globals.items()}
        args_spec = [encode_spec(a, targets) for a in self.args]
        return globals_spec, args_spec, targets


# ── Tenant-scoped HTTP client ──

class TenantHttpClient:
    """The `api` capability: relative-path calls to the storefront API for one store."""

    methods = ("get", "post", "put", "patch", "delete")

    def __init__(self, client: httpx.AsyncClient, tenant: TenantContext, permissions=()):
        self._client = client
        self.tenant = TenantContext.resolve(tenant)
        self._allowed = API_PERMISSION in set(permissions or ())

    async def request(self, method: str, path: str, params: Optional[dict] = None,
                      json: Any = None) -> dict:
        if not self._allowed:
            raise CapabilityDenied(f"Permission '{API_PERMISSION}' is required for api calls")
        if not isinstance(path, str) or "://" in path or path.startswith("//"):
            raise CapabilityDenied("api accepts relative paths only")
        if not path.startswith("/"):
            path = "/" + path
        resp = await self._client.request(
            method, path, params=params, json=json,
            headers={STORE_HEADER: self.tenant.store_id},
        )
        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        return {"status": resp.status_code, "data": data}

    async def get(self, path: str, params: Optional[dict] = None) -> dict:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Any = None, params: Optional[dict] = None) -> dict:
        return await self.request("POST", path, params=params, json=json)

    async def put(self, path: str, json: Any = None, params: Optional[dict] = None) -> dict:
        return await self.request("PUT", path, params=params, json=json)

    async def patch(self, path: str, json: Any = None, params: Optional[dict] = None) -> dict:
        return await self.request("PATCH", path, params=params, json=json)

    async def delete(self, path: str, params: Optional[dict] = None) -> dict:
        return await self.request("DELETE", path, params=params)


# ── Injector ──

def _require_tenant(store_id) -> TenantContext:
    if store_id is None:
        raise TenantIsolationError("Capabilities cannot be built without a store id")
    return TenantContext.resolve(store_id)


def public_plugin(plugin: dict) -> dict:
    """The plugin fields visible to plugin code."""
    return {k: plugin.get(k) for k in ("id", "slug", "name", "version")}


class CapabilityInjector:
    """Builds one CapabilitySet per invocation kind."""

    def __init__(self, databases: TenantDatabases, base_url: str = API_BASE_URL,
                 timeout: float = HTTP_TIMEOUT, transport: Optional[httpx.AsyncBaseTransport] = None,
                 ui: UiRegistry = UI_REGISTRY):
        self.databases = databases
        self.ui = ui
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout,
                                           transport=self._transport)
        return self._http

    async def aclose(self):
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def _db(self, tenant: TenantContext, plugin: dict) -> Remote:
        handle = TenantDataHandle(tenant, self.databases, plugin["id"], plugin.get("permissions") or ())
        return Remote("db", handle, TenantDataHandle.methods)

    def _api(self, tenant: TenantContext, plugin: dict) -> Remote:
        client = TenantHttpClient(self.http, tenant, plugin.get("permissions") or ())
        return Remote("api", client, TenantHttpClient.methods)

    def for_render(self, store_id, plugin: dict, props: Optional[dict] = None) -> CapabilitySet:
        tenant = _require_tenant(store_id)
        return CapabilitySet(
            kind="render", plugin=public_plugin(plugin), store_id=tenant.store_id,
            globals={"ui": self.ui, "api": self._api(tenant, plugin)},
            args=[props or {}],
        )

    def for_controller(self, store_id, plugin: dict, request: dict) -> CapabilitySet:
        tenant = _require_tenant(store_id)
        capabilities = Namespace(
            db=self._db(tenant, plugin),
            api=self._api(tenant, plugin),
            store_id=tenant.store_id,
            plugin=public_plugin(plugin),
        )
        return CapabilitySet(
            kind="controller", plugin=public_plugin(plugin), store_id=tenant.store_id,
            args=[Namespace(**request), ResponseSlot(), capabilities],
        )

    def for_hook(self, store_id, plugin: dict, hook: str, value, data: Optional[dict] = None) -> CapabilitySet:
        tenant = _require_tenant(store_id)
        context = Namespace(db=self._db(tenant, plugin), store_id=tenant.store_id,
                            plugin=public_plugin(plugin), hook=hook, data=data or {})
        return CapabilitySet(kind="hook", plugin=public_plugin(plugin), store_id=tenant.store_id,
                             args=[value, context])

    def for_event(self, store_id, plugin: dict, event: str, payload) -> CapabilitySet:
        tenant = _require_tenant(store_id)
        context = Namespace(db=self._db(tenant, plugin), store_id=tenant.store_id,
                            plugin=public_plugin(plugin), event=event)
        return CapabilitySet(kind="event", plugin=public_plugin(plugin), store_id=tenant.store_id,
                             args=[payload, context])

    def for_cron(self, store_id, plugin: dict, job: dict, params: Optional[dict] = None,
                 last_run_at: Optional[str] = None) -> CapabilitySet:
        tenant = _require_tenant(store_id)
        context = Namespace(db=self._db(tenant, plugin), store_id=tenant.store_id,
                            plugin=public_plugin(plugin), job=job, params=params or {},
                            last_run_at=last_run_at)
        return CapabilitySet(kind="cron", plugin=public_plugin(plugin), store_id=tenant.store_id,
                             args=[context])

    def for_lifecycle(self, store_id, plugin: dict, config: Optional[dict] = None,
                      previous_config: Optional[dict] = None) -> CapabilitySet:
        tenant = _require_tenant(store_id)
        context = Namespace(db=self._db(tenant, plugin), store_id=tenant.store_id,
                            plugin=public_plugin(plugin), config=config or {},
                            previous_config=previous_config)
        return CapabilitySet(kind="lifecycle", plugin=public_plugin(plugin), store_id=tenant.store_id,
                             args=[context])
