"""
Controller Invoker — serves plugin-defined API endpoints.

The store header is resolved before anything else; without a valid store id
no plugin lookup happens and no plugin code runs.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.errors import (
    CompileError, ExecutionTimeout, PluginRuntimeError, TenantIsolationError,
)
from plugin_runtime.store import ManifestStore
from plugin_runtime.tenant import resolve_store_id

logger = logging.getLogger(__name__)

DEFAULT_BODY = {"success": True, "message": "Controller executed successfully"}

# Headers a controller never sees
_HIDDEN_HEADERS = {"authorization", "cookie", "x-api-key", "proxy-authorization"}


@dataclass
class ControllerResponse:
    status: int
    body: object
    store_id: Optional[str] = None
    logs: list = field(default_factory=list)


def normalize_path(path: str) -> str:
    path = "/" + (path or "").strip("/")
    return path


def match_route(pattern: str, path: str) -> Optional[dict]:
    """Match `/orders/:id` style patterns. Returns captured params or None."""
    pattern_parts = normalize_path(pattern).strip("/").split("/")
    path_parts = normalize_path(path).strip("/").split("/")
    if len(pattern_parts) != len(path_parts):
        return None
    params = {}
    for expected, actual in zip(pattern_parts, path_parts):
        if expected.startswith(":") and len(expected) > 1:
            if not actual:
                return None
            params[expected[1:]] = actual
        elif expected != actual:
            return None
    return params


def find_controller(controllers: list[dict], method: str, path: str) -> tuple[Optional[dict], dict]:
    """Pick the controller for method+path: exact paths win over `:param` patterns."""
    method = method.upper()
    candidates = [c for c in controllers if c["method"] == method and c["enabled"]]
    path = normalize_path(path)
    for c in candidates:
        if ":" not in c["key"] and normalize_path(c["key"]) == path:
            return c, {}
    for c in candidates:
        if ":" in c["key"]:
            params = match_route(c["key"], path)
            if params is not None:
                return c, params
    return None, {}


class ControllerInvoker:
    def __init__(self, store: ManifestStore, engine: ExecutionEngine, injector: CapabilityInjector):
        self.store = store
        self.engine = engine
        self.injector = injector

    async def invoke(self, slug: str, path: str, method: str, headers: Mapping[str, str],
                     query: Optional[dict] = None, body=None) -> ControllerResponse:
        try:
            tenant = resolve_store_id(headers)
        except TenantIsolationError as e:
            return ControllerResponse(401, {"success": False, "error": str(e)})

        plugin = self.store.get_plugin(slug)
        if not plugin:
            return ControllerResponse(404, {"success": False, "error": f"Plugin '{slug}' not found"},
                                      tenant.store_id)
        if not self.store.is_active_for_store(plugin, tenant.store_id):
            return ControllerResponse(
                403, {"success": False, "error": f"Plugin '{slug}' is not enabled for this store"},
                tenant.store_id,
            )

        controllers = self.store.list_artifacts(plugin["id"], kind="controller")
        controller, params = find_controller(controllers, method, path)
        if controller is None:
            available = [f"{c['method']} {c['key']}" for c in controllers if c["enabled"]]
            return ControllerResponse(404, {
                "success": False,
                "error": f"No controller for {method.upper()} {normalize_path(path)}",
                "availableControllers": available,
            }, tenant.store_id)

        try:
            unit = self.engine.compile(controller)
        except CompileError as e:
            return ControllerResponse(500, {"success": False, "error": f"Controller failed to compile: {e}"},
                                      tenant.store_id)

        request = {
            "method": method.upper(),
            "path": normalize_path(path),
            "params": params,
            "query": dict(query or {}),
            "body": body if body is not None else {},
            "headers": {k.lower(): v for k, v in headers.items() if k.lower() not in _HIDDEN_HEADERS},
        }
        capset = self.injector.for_controller(tenant, plugin, request)
        try:
            outcome = await self.engine.invoke(unit, capset)
        except ExecutionTimeout as e:
            logger.error("Controller %s %s of '%s' timed out", method.upper(), controller["key"], slug)
            return ControllerResponse(504, {"success": False, "error": str(e)}, tenant.store_id)
        except PluginRuntimeError as e:
            logger.error("Controller %s %s of '%s' failed: %s", method.upper(), controller["key"], slug, e)
            return ControllerResponse(500, {"success": False, "error": str(e)}, tenant.store_id)

        response = outcome.response or {}
        if response.get("sent"):
            return ControllerResponse(response.get("status", 200), response.get("body"),
                                      tenant.store_id, outcome.logs)
        if outcome.value is not None:
            return ControllerResponse(response.get("status", 200), outcome.value,
                                      tenant.store_id, outcome.logs)
        return ControllerResponse(200, dict(DEFAULT_BODY), tenant.store_id, outcome.logs)
