"""
Widget and admin page rendering, plus admin navigation assembly.

Widgets in a global category (support, floating, chat, global) appear on every
storefront page; any other category only appears on the page type with the
same name. Render artifacts return a UI tree that is validated against the
primitive registry before it is handed back.
"""

import logging
from typing import Optional

from config import GLOBAL_WIDGET_CATEGORIES
from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.errors import ArtifactNotFound, PluginRuntimeError
from plugin_runtime.store import ManifestStore, plugin_from_row
from plugin_runtime.tenant import TenantContext
from plugin_runtime.ui_primitives import UI_REGISTRY, UiRegistry

logger = logging.getLogger(__name__)


def is_placed(category: str, page_type: Optional[str]) -> bool:
    """Whether a widget of this category renders on the given storefront page type."""
    category = (category or "").lower()
    if category in GLOBAL_WIDGET_CATEGORIES:
        return True
    return bool(page_type) and category == page_type.lower()


def _widget_info(row: dict) -> dict:
    return {
        "id": row["id"],
        "plugin": row["plugin_slug"],
        "widgetId": row["key"],
        "name": row.get("name") or row["key"],
        "category": row.get("category") or "",
    }


class WidgetRenderer:
    def __init__(self, store: ManifestStore, engine: ExecutionEngine, injector: CapabilityInjector,
                 ui: UiRegistry = UI_REGISTRY):
        self.store = store
        self.engine = engine
        self.injector = injector
        self.ui = ui

    def list_widgets(self, store_id: str, page_type: Optional[str] = None) -> list[dict]:
        """Widgets placed on `page_type` (every active widget when page_type is None)."""
        tenant = TenantContext.resolve(store_id)
        rows = self.store.list_active_artifacts(tenant.store_id, "widget")
        if page_type is not None:
            rows = [r for r in rows if is_placed(r.get("category"), page_type)]
        return [_widget_info(r) for r in rows]

    def _find_active(self, tenant: TenantContext, slug: str, kind: str, key: str) -> dict:
        for row in self.store.list_active_artifacts(tenant.store_id, kind, key):
            if row["plugin_slug"] == slug:
                return row
        raise ArtifactNotFound(f"No active {kind} '{key}' from plugin '{slug}' for this store")

    async def _render(self, tenant: TenantContext, row: dict, props: Optional[dict]):
        unit = self.engine.compile(row)
        capset = self.injector.for_render(tenant, plugin_from_row(row), props)
        outcome = await self.engine.invoke(unit, capset)
        return self.ui.validate_tree(outcome.value)

    async def render_widget(self, store_id: str, slug: str, widget_key: str,
                            props: Optional[dict] = None) -> dict:
        tenant = TenantContext.resolve(store_id)
        row = self._find_active(tenant, slug, "widget", widget_key)
        tree = await self._render(tenant, row, props)
        return {**_widget_info(row), "tree": tree}

    async def render_page_widgets(self, store_id: str, page_type: str,
                                  props: Optional[dict] = None) -> list[dict]:
        """Render every widget placed on a page type. One failing widget doesn't hide the rest."""
        tenant = TenantContext.resolve(store_id)
        rendered = []
        for row in self.store.list_active_artifacts(tenant.store_id, "widget"):
            if not is_placed(row.get("category"), page_type):
                continue
            entry = _widget_info(row)
            try:
                entry["tree"] = await self._render(tenant, row, props)
            except PluginRuntimeError as e:
                logger.error("Widget '%s' of '%s' failed to render: %s", row["key"], row["plugin_slug"], e)
                entry["tree"] = None
                entry["error"] = str(e)
            rendered.append(entry)
        return rendered

    async def render_admin_page(self, store_id: str, slug: str, page_key: str,
                                props: Optional[dict] = None) -> dict:
        tenant = TenantContext.resolve(store_id)
        row = self._find_active(tenant, slug, "admin_page", page_key)
        tree = await self._render(tenant, row, props)
        return {"plugin": slug, "pageKey": page_key, "route": row.get("route") or "", "tree": tree}

    def admin_navigation(self, store_id: str) -> list[dict]:
        """Navigation entries of installed plugins. Routes with no admin page are marked dead."""
        tenant = TenantContext.resolve(store_id)
        pages = self.store.list_active_artifacts(tenant.store_id, "admin_page")
        routes_by_plugin: dict[str, set] = {}
        for page in pages:
            if page.get("route"):
                routes_by_plugin.setdefault(page["plugin_id"], set()).add(page["route"])

        entries = []
        for install in self.store.list_installs(store_id=tenant.store_id):
            if not install["is_enabled"]:
                continue
            plugin = self.store.get_plugin_by_id(install["plugin_id"])
            if not plugin or plugin["status"] != "active":
                continue
            nav = (plugin.get("manifest") or {}).get("adminNavigation") or {}
            if not nav.get("enabled"):
                continue
            route = nav.get("route") or ""
            dead = route not in routes_by_plugin.get(plugin["id"], set())
            if dead:
                logger.warning("Plugin '%s' navigation route %r has no matching admin page",
                               plugin["slug"], route)
            entries.append({
                "plugin": plugin["slug"],
                "label": nav.get("label") or plugin["name"],
                "icon": nav.get("icon") or "Package",
                "route": route,
                "order": nav.get("order", 100),
                "dead": dead,
            })
        entries.sort(key=lambda e: (e["order"], e["label"]))
        return entries
