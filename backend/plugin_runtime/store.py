"""
Manifest Store — plugins, their authored artifacts and per-store installs.

Everything lives in the platform SQLite database. Install order and artifact
creation order come from the `sequences` table so hook chains run in a
stable order across restarts.
"""

import hashlib
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from db import db_connection_row
from plugin_runtime.errors import ArtifactNotFound, PluginInUse
from plugin_runtime.manifest import ARTIFACT_KINDS, PluginManifest

logger = logging.getLogger(__name__)

_JSON_COLUMNS = ("permissions", "config_schema", "manifest", "config")


def source_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row(row: Optional[sqlite3.Row]) -> Optional[dict]:
    if row is None:
        return None
    d = dict(row)
    for col in _JSON_COLUMNS:
        if col in d and isinstance(d[col], str):
            try:
                d[col] = json.loads(d[col])
            except (json.JSONDecodeError, TypeError):
                d[col] = {} if col != "permissions" else []
    for col in ("enabled", "is_enabled"):
        if col in d and d[col] is not None:
            d[col] = bool(d[col])
    return d


def next_sequence(conn: sqlite3.Connection, name: str) -> int:
    """Increment and return a named counter inside the caller's transaction."""
    conn.execute(
        "INSERT INTO sequences (name, value) VALUES (?, 0) ON CONFLICT(name) DO NOTHING",
        (name,),
    )
    conn.execute("UPDATE sequences SET value = value + 1 WHERE name = ?", (name,))
    return conn.execute("SELECT value FROM sequences WHERE name = ?", (name,)).fetchone()[0]


class ManifestStore:
    """CRUD over plugins, plugin_artifacts and plugin_installs."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    # ── Plugins ──

    def register_plugin(self, manifest: PluginManifest) -> dict:
        """Create a plugin or update the one with the same slug."""
        now = _now()
        data = manifest.model_dump()
        with db_connection_row(self.db_path) as conn:
            existing = conn.execute("SELECT id FROM plugins WHERE slug = ?", (manifest.slug,)).fetchone()
            if existing:
                plugin_id = existing["id"]
                conn.execute(
                    """UPDATE plugins SET name = ?, version = ?, category = ?, description = ?,
                       permissions = ?, config_schema = ?, manifest = ?, updated_at = ?
                       WHERE id = ?""",
                    (manifest.name, manifest.version, manifest.category, manifest.description,
                     json.dumps(sorted(set(manifest.permissions))), json.dumps(manifest.configSchema),
                     json.dumps(data), now, plugin_id),
                )
                logger.info("Plugin updated: %s (%s)", manifest.slug, manifest.version)
            else:
                plugin_id = f"plg_{uuid.uuid4().hex[:12]}"
                conn.execute(
                    """INSERT INTO plugins (id, slug, name, version, category, description, status,
                       permissions, config_schema, manifest, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?, ?, ?, ?)""",
                    (plugin_id, manifest.slug, manifest.name, manifest.version, manifest.category,
                     manifest.description, json.dumps(sorted(set(manifest.permissions))),
                     json.dumps(manifest.configSchema), json.dumps(data), now, now),
                )
                logger.info("Plugin registered: %s (%s)", manifest.slug, manifest.version)
            conn.commit()
        return self.get_plugin_by_id(plugin_id)

    def get_plugin(self, slug: str) -> Optional[dict]:
        with db_connection_row(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM plugins WHERE slug = ?", (slug,)).fetchone())

    def get_plugin_by_id(self, plugin_id: str) -> Optional[dict]:
        with db_connection_row(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM plugins WHERE id = ?", (plugin_id,)).fetchone())

    def require_plugin(self, slug: str) -> dict:
        plugin = self.get_plugin(slug)
        if not plugin:
            raise ArtifactNotFound(f"Plugin '{slug}' not found")
        return plugin

    def list_plugins(self) -> list[dict]:
        with db_connection_row(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM plugins ORDER BY name").fetchall()
        return [_row(r) for r in rows]

    def set_plugin_status(self, slug: str, status: str) -> dict:
        if status not in ("active", "inactive"):
            raise ValueError(f"Invalid plugin status: {status}")
        plugin = self.require_plugin(slug)
        with db_connection_row(self.db_path) as conn:
            conn.execute("UPDATE plugins SET status = ?, updated_at = ? WHERE id = ?",
                         (status, _now(), plugin["id"]))
            conn.commit()
        return self.get_plugin_by_id(plugin["id"])

    def delete_plugin(self, slug: str):
        """Delete a plugin and everything it owns. Refused while installs exist."""
        plugin = self.require_plugin(slug)
        with db_connection_row(self.db_path) as conn:
            installs = conn.execute(
                "SELECT COUNT(*) FROM plugin_installs WHERE plugin_id = ?", (plugin["id"],)
            ).fetchone()[0]
            if installs:
                raise PluginInUse(f"Plugin '{slug}' is installed in {installs} store(s)")
            for table in ("plugin_cron", "plugin_migrations", "plugin_artifacts"):
                conn.execute(f"DELETE FROM {table} WHERE plugin_id = ?", (plugin["id"],))
            conn.execute("DELETE FROM plugins WHERE id = ?", (plugin["id"],))
            conn.commit()
        logger.info("Plugin deleted: %s", slug)

    # ── Artifacts ──

    def save_artifact(self, plugin_id: str, kind: str, key: str, source_text: str,
                      method: str = "", name: str = "", category: str = "",
                      route: str = "", enabled: bool = True) -> dict:
        """Insert or replace the source of one artifact.

        Re-saving keeps the artifact id and creation order but changes the
        source hash, which retires any compiled copy of the old text.
        """
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind: {kind}")
        method = (method or "").upper() if kind == "controller" else ""
        digest = source_hash(source_text)
        now = _now()
        with db_connection_row(self.db_path) as conn:
            existing = conn.execute(
                "SELECT id FROM plugin_artifacts WHERE plugin_id = ? AND kind = ? AND key = ? AND method = ?",
                (plugin_id, kind, key, method),
            ).fetchone()
            if existing:
                artifact_id = existing["id"]
                conn.execute(
                    """UPDATE plugin_artifacts SET source_text = ?, source_hash = ?, name = ?,
                       category = ?, route = ?, enabled = ?, updated_at = ? WHERE id = ?""",
                    (source_text, digest, name, category, route, int(enabled), now, artifact_id),
                )
            else:
                artifact_id = f"art_{uuid.uuid4().hex[:12]}"
                seq = next_sequence(conn, "artifact")
                conn.execute(
                    """INSERT INTO plugin_artifacts (id, plugin_id, kind, key, method, name, category,
                       route, source_text, source_hash, enabled, created_seq, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (artifact_id, plugin_id, kind, key, method, name, category, route,
                     source_text, digest, int(enabled), seq, now, now),
                )
            conn.commit()
        return self.get_artifact(artifact_id)

    def get_artifact(self, artifact_id: str) -> Optional[dict]:
        with db_connection_row(self.db_path) as conn:
            return _row(conn.execute("SELECT * FROM plugin_artifacts WHERE id = ?",
                                     (artifact_id,)).fetchone())

    def find_artifact(self, plugin_id: str, kind: str, key: str, method: str = "") -> Optional[dict]:
        method = (method or "").upper() if kind == "controller" else ""
        with db_connection_row(self.db_path) as conn:
            return _row(conn.execute(
                "SELECT * FROM plugin_artifacts WHERE plugin_id = ? AND kind = ? AND key = ? AND method = ?",
                (plugin_id, kind, key, method),
            ).fetchone())

    def list_artifacts(self, plugin_id: str, kind: Optional[str] = None,
                       include_source: bool = True) -> list[dict]:
        sql = "SELECT * FROM plugin_artifacts WHERE plugin_id = ?"
        params: list = [plugin_id]
        if kind:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY created_seq"
        with db_connection_row(self.db_path) as conn:
            rows = [_row(r) for r in conn.execute(sql, params).fetchall()]
        if not include_source:
            for r in rows:
                r.pop("source_text", None)
        return rows

    def set_artifact_enabled(self, artifact_id: str, enabled: bool) -> dict:
        with db_connection_row(self.db_path) as conn:
            cur = conn.execute("UPDATE plugin_artifacts SET enabled = ?, updated_at = ? WHERE id = ?",
                               (int(enabled), _now(), artifact_id))
            conn.commit()
        if cur.rowcount == 0:
            raise ArtifactNotFound(f"Artifact '{artifact_id}' not found")
        return self.get_artifact(artifact_id)

    # ── Installs ──

    def install(self, plugin_id: str, store_id: str, config: Optional[dict] = None) -> dict:
        """Install a plugin for a store. Re-installing returns the existing record."""
        now = _now()
        with db_connection_row(self.db_path) as conn:
            existing = conn.execute(
                "SELECT 1 FROM plugin_installs WHERE plugin_id = ? AND store_id = ?",
                (plugin_id, store_id),
            ).fetchone()
            if not existing:
                seq = next_sequence(conn, "install")
                conn.execute(
                    """INSERT INTO plugin_installs (plugin_id, store_id, is_enabled, config,
                       install_seq, installed_at, updated_at) VALUES (?, ?, 1, ?, ?, ?, ?)""",
                    (plugin_id, store_id, json.dumps(config or {}), seq, now, now),
                )
                conn.commit()
        return self.get_install(plugin_id, store_id)

    def get_install(self, plugin_id: str, store_id: str) -> Optional[dict]:
        with db_connection_row(self.db_path) as conn:
            return _row(conn.execute(
                "SELECT * FROM plugin_installs WHERE plugin_id = ? AND store_id = ?",
                (plugin_id, store_id),
            ).fetchone())

    def list_installs(self, plugin_id: Optional[str] = None, store_id: Optional[str] = None) -> list[dict]:
        conditions, params = [], []
        if plugin_id:
            conditions.append("plugin_id = ?")
            params.append(plugin_id)
        if store_id:
            conditions.append("store_id = ?")
            params.append(store_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with db_connection_row(self.db_path) as conn:
            rows = conn.execute(f"SELECT * FROM plugin_installs {where} ORDER BY install_seq",
                                params).fetchall()
        return [_row(r) for r in rows]

    def set_install_enabled(self, plugin_id: str, store_id: str, enabled: bool) -> dict:
        with db_connection_row(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE plugin_installs SET is_enabled = ?, updated_at = ? WHERE plugin_id = ? AND store_id = ?",
                (int(enabled), _now(), plugin_id, store_id),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise ArtifactNotFound(f"Plugin is not installed for store '{store_id}'")
        return self.get_install(plugin_id, store_id)

    def update_install_config(self, plugin_id: str, store_id: str, config: dict) -> dict:
        with db_connection_row(self.db_path) as conn:
            cur = conn.execute(
                "UPDATE plugin_installs SET config = ?, updated_at = ? WHERE plugin_id = ? AND store_id = ?",
                (json.dumps(config), _now(), plugin_id, store_id),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise ArtifactNotFound(f"Plugin is not installed for store '{store_id}'")
        return self.get_install(plugin_id, store_id)

    def uninstall(self, plugin_id: str, store_id: str):
        with db_connection_row(self.db_path) as conn:
            conn.execute("DELETE FROM plugin_cron WHERE plugin_id = ? AND store_id = ?",
                         (plugin_id, store_id))
            conn.execute("DELETE FROM plugin_installs WHERE plugin_id = ? AND store_id = ?",
                         (plugin_id, store_id))
            conn.commit()

    def is_active_for_store(self, plugin: dict, store_id: str) -> bool:
        """True when the plugin is active and installed+enabled for the store."""
        if plugin.get("status") != "active":
            return False
        install = self.get_install(plugin["id"], store_id)
        return bool(install and install["is_enabled"])

    # ── Dispatch queries ──

    def list_active_artifacts(self, store_id: str, kind: str, key: Optional[str] = None) -> list[dict]:
        """Enabled artifacts of active plugins installed+enabled for the store.

        Ordered by install order, then artifact creation order. Each row
        carries the owning plugin's slug, name, version and permissions, and
        the store's install config.
        """
        sql = """SELECT a.*, p.slug AS plugin_slug, p.name AS plugin_name,
                        p.version AS plugin_version, p.permissions AS permissions,
                        i.config AS config, i.install_seq AS install_seq
                 FROM plugin_artifacts a
                 JOIN plugins p ON p.id = a.plugin_id
                 JOIN plugin_installs i ON i.plugin_id = a.plugin_id AND i.store_id = ?
                 WHERE a.kind = ? AND a.enabled = 1 AND p.status = 'active' AND i.is_enabled = 1"""
        params: list = [store_id, kind]
        if key is not None:
            sql += " AND a.key = ?"
            params.append(key)
        sql += " ORDER BY i.install_seq, a.created_seq"
        with db_connection_row(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row(r) for r in rows]


def plugin_from_row(row: dict) -> dict:
    """Rebuild the owning plugin's fields from a list_active_artifacts row."""
    return {
        "id": row["plugin_id"],
        "slug": row["plugin_slug"],
        "name": row["plugin_name"],
        "version": row["plugin_version"],
        "permissions": row.get("permissions") or [],
    }
