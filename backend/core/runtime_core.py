"""
PluginRuntime — composition root of the plugin extension runtime.

Wires the Manifest Store, tenant databases, code loader, sandbox pool,
execution engine, capability injector and every dispatcher together, and owns
their startup and shutdown. Routes reach it through `auth.get_runtime()`.

Architecture:
  - ManifestStore: plugins, artifacts, installs (platform SQLite DB)
  - TenantDatabases: one SQLite DB per store for plugin-owned tables
  - SandboxPool: long-lived guest interpreters running plugin code
  - HookDispatcher / EventDispatcher / ControllerInvoker / WidgetRenderer
  - PluginScheduler: cron jobs, ticking in the background
  - MigrationRunner and LifecycleManager: per-store install state
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx

import audit
from config import PLATFORM_DB_PATH, SCHEDULER_ENABLED, TENANT_DB_DIR
from schema import init_db
from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.controllers import ControllerInvoker, normalize_path
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.events import EventDispatcher
from plugin_runtime.hooks import HookDispatcher, is_known_hook
from plugin_runtime.lifecycle import LIFECYCLE_CALLBACKS, LifecycleManager
from plugin_runtime.loader import CodeLoader
from plugin_runtime.manifest import ARTIFACT_KINDS, HTTP_METHODS, PluginManifest
from plugin_runtime.migrations import MigrationRunner
from plugin_runtime.sandbox import SandboxPool
from plugin_runtime.scheduler import PluginScheduler
from plugin_runtime.store import ManifestStore
from plugin_runtime.tenant import TenantDatabases
from plugin_runtime.widgets import WidgetRenderer

logger = logging.getLogger(__name__)


class PluginRuntime:
    def __init__(self, platform_db: Path = PLATFORM_DB_PATH, tenant_dir: Path = TENANT_DB_DIR,
                 pool: Optional[SandboxPool] = None,
                 http_transport: Optional[httpx.AsyncBaseTransport] = None,
                 scheduler_enabled: bool = SCHEDULER_ENABLED):
        self.platform_db = Path(platform_db)
        init_db(self.platform_db)
        self.store = ManifestStore(self.platform_db)
        self.tenants = TenantDatabases(tenant_dir)
        self.loader = CodeLoader(self.store)
        self.pool = pool or SandboxPool()
        self.engine = ExecutionEngine(self.loader, self.pool)
        self.injector = CapabilityInjector(self.tenants, transport=http_transport)
        self.hooks = HookDispatcher(self.store, self.engine, self.injector)
        self.events = EventDispatcher(self.store, self.engine, self.injector)
        self.controllers = ControllerInvoker(self.store, self.engine, self.injector)
        self.widgets = WidgetRenderer(self.store, self.engine, self.injector)
        self.migrations = MigrationRunner(self.store, self.tenants)
        self.lifecycle = LifecycleManager(self.store, self.engine, self.injector, self.migrations)
        self.scheduler = PluginScheduler(self.store, self.engine, self.injector)
        self._scheduler_enabled = scheduler_enabled
        self._ready = False
        self._startup_time: Optional[float] = None

    # ── Startup / Shutdown ──

    async def start(self):
        """Start the sandbox pool and the cron loop."""
        self._startup_time = time.time()
        audit.configure(self.platform_db)
        await self.pool.start()
        if self._scheduler_enabled:
            self.scheduler.start()
        self._ready = True
        logger.info("Plugin runtime ready (%d plugin(s) registered)", len(self.store.list_plugins()))

    async def shutdown(self):
        """Clean shutdown — stop the scheduler, drain events, stop sandbox workers."""
        self._ready = False
        await self.scheduler.stop()
        await self.events.drain()
        await self.pool.shutdown()
        await self.injector.aclose()
        logger.info("Plugin runtime stopped")

    # ── Plugins & artifacts ──

    def register_plugin(self, manifest: PluginManifest) -> dict:
        return self.store.register_plugin(manifest)

    def save_artifact(self, slug: str, kind: str, key: str, source_text: str,
                      method: str = "", name: str = "", category: str = "",
                      route: str = "", enabled: bool = True) -> dict:
        """Validate and persist one artifact.

        Raises ArtifactNotFound for an unknown plugin, ValueError for an
        invalid kind/key/method, and CompileError (nothing persisted) when the
        source does not validate.
        """
        plugin = self.store.require_plugin(slug)
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind '{kind}'. Use one of: {', '.join(ARTIFACT_KINDS)}")
        if not key or not key.strip():
            raise ValueError("Artifact key is required")
        key = key.strip()
        if kind == "hook" and not is_known_hook(key):
            raise ValueError(f"Unknown hook point '{key}'")
        if kind == "lifecycle" and key not in LIFECYCLE_CALLBACKS:
            raise ValueError(f"Unknown lifecycle callback '{key}'. Use one of: {', '.join(LIFECYCLE_CALLBACKS)}")
        if kind == "controller":
            method = (method or "GET").upper()
            if method not in HTTP_METHODS:
                raise ValueError(f"Unsupported HTTP method '{method}'")
            key = normalize_path(key)

        self.engine.check_source(source_text)
        artifact = self.store.save_artifact(plugin["id"], kind, key, source_text, method=method,
                                            name=name, category=category, route=route, enabled=enabled)
        logger.info("Artifact saved: %s %s '%s' (%s)", slug, kind, key, artifact["source_hash"][:12])
        return artifact

    # ── Status ──

    def get_status(self) -> dict:
        return {
            "ready": self._ready,
            "uptime_seconds": int(time.time() - self._startup_time) if self._startup_time else 0,
            "started_at": (datetime.fromtimestamp(self._startup_time, timezone.utc).isoformat()
                           if self._startup_time else None),
            "plugins": len(self.store.list_plugins()),
            "sandbox": self.pool.stats(),
            "events_in_flight": self.events.in_flight,
            "cron_jobs_running": len(self.scheduler.running_jobs),
            "scheduler_enabled": self._scheduler_enabled,
        }
