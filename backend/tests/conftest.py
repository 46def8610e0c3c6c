"""
Test fixtures for the plugin host test suite.
"""

import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add backend to path
BACKEND_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(BACKEND_DIR))

# Point settings at a throwaway file before importing anything that reads config
_SETTINGS_DIR = Path(tempfile.mkdtemp(prefix="plugin-host-tests-"))
(_SETTINGS_DIR / "runtime.yaml").write_text(f"""
storage:
  platform_db: "{_SETTINGS_DIR / 'platform.db'}"
  tenant_dir: "{_SETTINGS_DIR / 'tenants'}"
sandbox:
  workers: 2
  invoke_timeout_seconds: 5.0
  memory_limit_mb: 0
scheduler:
  enabled: false
""")
os.environ["PLUGIN_HOST_SETTINGS"] = str(_SETTINGS_DIR / "runtime.yaml")
os.environ["PLUGIN_HOST_API_KEY"] = "test-api-key"

API_KEY = "test-api-key"


@pytest.fixture
def platform_db(tmp_path):
    """A fresh platform database with the full schema."""
    from schema import init_db
    path = tmp_path / "platform.db"
    init_db(path)
    return path


@pytest.fixture
def store(platform_db):
    from plugin_runtime.store import ManifestStore
    return ManifestStore(platform_db)


@pytest.fixture
def tenants(tmp_path):
    from plugin_runtime.tenant import TenantDatabases
    return TenantDatabases(tmp_path / "tenants")


@pytest.fixture
def make_plugin(store):
    """Register a plugin by slug: make_plugin("bulk-badges", permissions=[...])."""
    from plugin_runtime.manifest import PluginManifest

    def _make(slug: str, **fields) -> dict:
        fields.setdefault("name", slug.replace("-", " ").title())
        return store.register_plugin(PluginManifest(slug=slug, **fields))

    return _make


@pytest.fixture
def runtime(tmp_path):
    """A PluginRuntime on temp databases with a small sandbox pool and no cron loop."""
    from core import PluginRuntime
    from plugin_runtime.sandbox import SandboxPool
    return PluginRuntime(
        platform_db=tmp_path / "platform.db",
        tenant_dir=tmp_path / "tenants",
        pool=SandboxPool(size=2, memory_limit_mb=0),
        scheduler_enabled=False,
    )


def run_in_runtime(runtime, scenario):
    """Start the runtime, await scenario(), and always shut down, all in one event loop."""
    async def main():
        await runtime.start()
        try:
            return await scenario()
        finally:
            await runtime.shutdown()
    return asyncio.run(main())
