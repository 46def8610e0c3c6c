"""
Plugin lifecycle — install, enable, disable, config update and uninstall per store.

A plugin may supply any subset of the callbacks as `lifecycle` artifacts keyed
by callback name. Callbacks are best-effort: their failures are reported back
to the caller but never undo the state change.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.errors import ArtifactNotFound, PluginRuntimeError
from plugin_runtime.migrations import MigrationRunner
from plugin_runtime.store import ManifestStore
from plugin_runtime.tenant import TenantContext

logger = logging.getLogger(__name__)

LIFECYCLE_CALLBACKS = ("install", "enable", "disable", "config_update", "uninstall")


@dataclass
class PluginLifecycle:
    """The callbacks a plugin supplies, each an artifact row or None."""
    install: Optional[dict] = None
    enable: Optional[dict] = None
    disable: Optional[dict] = None
    config_update: Optional[dict] = None
    uninstall: Optional[dict] = None

    @classmethod
    def from_artifacts(cls, artifacts: list[dict]) -> "PluginLifecycle":
        found = {a["key"]: a for a in artifacts
                 if a["kind"] == "lifecycle" and a["enabled"] and a["key"] in LIFECYCLE_CALLBACKS}
        return cls(**found)

    def has(self, name: str) -> bool:
        return getattr(self, name, None) is not None


class LifecycleManager:
    def __init__(self, store: ManifestStore, engine: ExecutionEngine, injector: CapabilityInjector,
                 migrations: Optional[MigrationRunner] = None):
        self.store = store
        self.engine = engine
        self.injector = injector
        self.migrations = migrations

    def callbacks(self, plugin: dict) -> PluginLifecycle:
        return PluginLifecycle.from_artifacts(self.store.list_artifacts(plugin["id"], kind="lifecycle"))

    async def _run_callback(self, plugin: dict, store_id: str, name: str,
                            config: Optional[dict] = None, previous_config: Optional[dict] = None) -> dict:
        lifecycle = self.callbacks(plugin)
        if not lifecycle.has(name):
            return {"callback": name, "ran": False}
        try:
            unit = self.engine.compile(getattr(lifecycle, name))
            capset = self.injector.for_lifecycle(store_id, plugin, config, previous_config)
            await self.engine.invoke(unit, capset)
        except PluginRuntimeError as e:
            logger.error("Lifecycle '%s' of plugin '%s' failed for store %s: %s",
                         name, plugin["slug"], store_id, e)
            return {"callback": name, "ran": True, "ok": False, "error": str(e)}
        return {"callback": name, "ran": True, "ok": True}

    def _require_install(self, plugin: dict, store_id: str) -> dict:
        install = self.store.get_install(plugin["id"], store_id)
        if not install:
            raise ArtifactNotFound(f"Plugin '{plugin['slug']}' is not installed for store '{store_id}'")
        return install

    async def install(self, slug: str, store_id: str, config: Optional[dict] = None) -> dict:
        """Install for a store, apply pending migrations, then run the install callback."""
        tenant = TenantContext.resolve(store_id)
        plugin = self.store.require_plugin(slug)
        existing = self.store.get_install(plugin["id"], tenant.store_id)
        install = self.store.install(plugin["id"], tenant.store_id, config)
        if existing:
            return {"install": install, "created": False, "callback": {"callback": "install", "ran": False}}

        migrations = []
        if self.migrations:
            migrations = [s.to_dict() for s in self.migrations.apply_pending(plugin["id"], tenant.store_id)]
        callback = await self._run_callback(plugin, tenant.store_id, "install", install["config"])
        logger.info("Plugin '%s' installed for store %s", slug, tenant.store_id)
        return {"install": install, "created": True, "migrations": migrations, "callback": callback}

    async def set_enabled(self, slug: str, store_id: str, enabled: bool) -> dict:
        tenant = TenantContext.resolve(store_id)
        plugin = self.store.require_plugin(slug)
        self._require_install(plugin, tenant.store_id)
        install = self.store.set_install_enabled(plugin["id"], tenant.store_id, enabled)
        name = "enable" if enabled else "disable"
        callback = await self._run_callback(plugin, tenant.store_id, name, install["config"])
        logger.info("Plugin '%s' %sd for store %s", slug, name, tenant.store_id)
        return {"install": install, "callback": callback}

    async def update_config(self, slug: str, store_id: str, config: dict) -> dict:
        tenant = TenantContext.resolve(store_id)
        plugin = self.store.require_plugin(slug)
        previous = self._require_install(plugin, tenant.store_id)["config"]
        install = self.store.update_install_config(plugin["id"], tenant.store_id, config)
        callback = await self._run_callback(plugin, tenant.store_id, "config_update", config, previous)
        return {"install": install, "callback": callback}

    async def uninstall(self, slug: str, store_id: str) -> dict:
        """Run the uninstall callback (while the install still exists), then remove the install."""
        tenant = TenantContext.resolve(store_id)
        plugin = self.store.require_plugin(slug)
        install = self._require_install(plugin, tenant.store_id)
        callback = await self._run_callback(plugin, tenant.store_id, "uninstall", install["config"])
        self.store.uninstall(plugin["id"], tenant.store_id)
        logger.info("Plugin '%s' uninstalled from store %s", slug, tenant.store_id)
        return {"install": None, "callback": callback}
