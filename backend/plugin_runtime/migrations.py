"""
Migration Runner — applies plugin-owned DDL to store databases.

Definitions are registered once per plugin in the platform database; status
is tracked per store inside the tenant database (`_plugin_migrations`), so
the DDL and its status record commit in the same transaction. A failed
migration stays failed until an operator resets it.
"""

import hashlib
import logging
import re
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from db import db_connection_row
from plugin_runtime.errors import ArtifactNotFound, MigrationFailed
from plugin_runtime.store import ManifestStore
from plugin_runtime.tenant import TenantContext, TenantDatabases

logger = logging.getLogger(__name__)

PENDING, APPLIED, FAILED = "pending", "applied", "failed"

_COMMENTS = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_STRINGS = re.compile(r"'(?:[^']|'')*'")
_TRANSACTION_CONTROL = re.compile(
    # A statement-leading END is COMMIT; the END of CASE ... END is not
    r"\b(BEGIN|COMMIT|ROLLBACK|SAVEPOINT|RELEASE|ATTACH|DETACH|VACUUM)\b|(?:^|;)\s*(END)\b",
    re.IGNORECASE,
)
_CREATE_TABLE = re.compile(r"\bCREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"`\[]?(\w+)", re.IGNORECASE)
_ADD_COLUMN = re.compile(r"\bALTER\s+TABLE\s+[\"`\[]?(\w+)[\"`\]]?\s+ADD\s+(?:COLUMN\s+)?[\"`\[]?(\w+)",
                         re.IGNORECASE)
_CREATE_INDEX = re.compile(r"\bCREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"`\[]?(\w+)",
                           re.IGNORECASE)
_DROP_TABLE = re.compile(r"\bDROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?[\"`\[]?(\w+)", re.IGNORECASE)
_DROP_COLUMN = re.compile(r"\bALTER\s+TABLE\s+[\"`\[]?(\w+)[\"`\]]?\s+DROP\s+(?:COLUMN\s+)?[\"`\[]?(\w+)",
                          re.IGNORECASE)
_RENAME = re.compile(r"\bALTER\s+TABLE\s+[\"`\[]?(\w+)[\"`\]]?\s+RENAME\b", re.IGNORECASE)
_INTERNAL = re.compile(r"\b(_plugin_\w+|sqlite_\w+)\b", re.IGNORECASE)


def _strip_sql(sql: str) -> str:
    return _STRINGS.sub("''", _COMMENTS.sub(" ", sql))


def validate_migration_sql(sql: str):
    """Reject text that would break the runner's own transaction. Raises ValueError."""
    if not sql or not sql.strip():
        raise ValueError("Migration SQL is empty")
    bare = _strip_sql(sql)
    match = _TRANSACTION_CONTROL.search(bare)
    if match:
        keyword = match.group(match.lastindex).upper()
        raise ValueError(f"Migration SQL must not contain transaction control ({keyword})")
    internal = _INTERNAL.search(bare)
    if internal:
        raise ValueError(f"Migration SQL must not touch internal table '{internal.group(1)}'")


def analyze_sql(sql: str) -> dict:
    """Summarize what a migration does and flag destructive changes for the operator."""
    bare = _strip_sql(sql or "")
    summary = {
        "tables_created": _CREATE_TABLE.findall(bare),
        "columns_added": [f"{t}.{c}" for t, c in _ADD_COLUMN.findall(bare)],
        "indexes_created": _CREATE_INDEX.findall(bare),
    }
    warnings = []
    for table in _DROP_TABLE.findall(bare):
        warnings.append(f"Drops table '{table}': existing data will be lost")
    for table, column in _DROP_COLUMN.findall(bare):
        warnings.append(f"Drops column '{table}.{column}': existing data will be lost")
    for table in _RENAME.findall(bare):
        warnings.append(f"Renames in table '{table}': plugin code using the old name will break")
    if re.search(r"\bDELETE\s+FROM\b|\bUPDATE\s+\w+\s+SET\b", bare, re.IGNORECASE):
        warnings.append("Modifies existing rows")
    return {"summary": summary, "warnings": warnings}


def checksum(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


@dataclass
class MigrationStatus:
    migration_id: str
    store_id: str
    status: str = PENDING
    applied_at: Optional[str] = None
    error: Optional[str] = None
    execution_ms: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _version_key(version: str):
    parts = re.split(r"[.\-_]", version)
    return [(0, int(p), "") if p.isdigit() else (1, 0, p) for p in parts]


class MigrationRunner:
    def __init__(self, store: ManifestStore, databases: TenantDatabases):
        self.store = store
        self.databases = databases

    # ── Definitions ──

    def register(self, plugin_id: str, name: str, version: str, sql_text: str) -> dict:
        validate_migration_sql(sql_text)
        migration_id = f"mig_{uuid.uuid4().hex[:12]}"
        now = datetime.now(timezone.utc).isoformat()
        try:
            with db_connection_row(self.store.db_path) as conn:
                conn.execute(
                    """INSERT INTO plugin_migrations (id, plugin_id, name, version, sql_text,
                       checksum, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (migration_id, plugin_id, name, version, sql_text, checksum(sql_text), now, now),
                )
                conn.commit()
        except sqlite3.IntegrityError:
            raise ValueError(f"Migration version {version} already exists for this plugin")
        logger.info("Migration registered: %s %s (%s)", plugin_id, version, name)
        return self.get(migration_id)

    def get(self, migration_id: str) -> Optional[dict]:
        with db_connection_row(self.store.db_path) as conn:
            row = conn.execute("SELECT * FROM plugin_migrations WHERE id = ?", (migration_id,)).fetchone()
        return dict(row) if row else None

    def _require(self, migration_id: str) -> dict:
        migration = self.get(migration_id)
        if not migration:
            raise ArtifactNotFound(f"Migration '{migration_id}' not found")
        return migration

    def list_for_plugin(self, plugin_id: str, store_id: Optional[str] = None) -> list[dict]:
        with db_connection_row(self.store.db_path) as conn:
            rows = [dict(r) for r in conn.execute(
                "SELECT * FROM plugin_migrations WHERE plugin_id = ?", (plugin_id,)).fetchall()]
        rows.sort(key=lambda m: _version_key(m["version"]))
        if store_id is not None:
            for m in rows:
                m.update({k: v for k, v in self.status(m["id"], store_id).to_dict().items()
                          if k != "migration_id"})
        return rows

    # ── Status ──

    def status(self, migration_id: str, store_id: str) -> MigrationStatus:
        tenant = TenantContext.resolve(store_id)
        with self.databases.connect(tenant) as conn:
            row = conn.execute(
                "SELECT status, applied_at, error, execution_ms FROM _plugin_migrations WHERE migration_id = ?",
                (migration_id,),
            ).fetchone()
        if not row:
            return MigrationStatus(migration_id, tenant.store_id)
        return MigrationStatus(migration_id, tenant.store_id, row["status"], row["applied_at"],
                               row["error"], row["execution_ms"])

    def apply(self, migration_id: str, store_id: str) -> MigrationStatus:
        """Apply a migration to one store. Applied is a no-op; Failed raises until reset."""
        tenant = TenantContext.resolve(store_id)
        migration = self._require(migration_id)
        current = self.status(migration_id, tenant.store_id)
        if current.status == APPLIED:
            return current
        if current.status == FAILED:
            raise MigrationFailed(
                f"Migration {migration['version']} previously failed: {current.error}. Reset it first.",
                migration_id=migration_id,
            )

        started = time.monotonic()
        path = self.databases.path_for(tenant)
        conn = sqlite3.connect(str(path), isolation_level=None)
        try:
            conn.execute("PRAGMA busy_timeout = 5000")
            try:
                conn.executescript("BEGIN;\n" + migration["sql_text"])
                elapsed = int((time.monotonic() - started) * 1000)
                applied_at = datetime.now(timezone.utc).isoformat()
                conn.execute(
                    """INSERT OR REPLACE INTO _plugin_migrations
                       (migration_id, plugin_id, version, status, checksum, applied_at, error, execution_ms)
                       VALUES (?, ?, ?, ?, ?, ?, NULL, ?)""",
                    (migration_id, migration["plugin_id"], migration["version"], APPLIED,
                     migration["checksum"], applied_at, elapsed),
                )
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                elapsed = int((time.monotonic() - started) * 1000)
                conn.execute(
                    """INSERT OR REPLACE INTO _plugin_migrations
                       (migration_id, plugin_id, version, status, checksum, applied_at, error, execution_ms)
                       VALUES (?, ?, ?, ?, ?, NULL, ?, ?)""",
                    (migration_id, migration["plugin_id"], migration["version"], FAILED,
                     migration["checksum"], str(e), elapsed),
                )
                logger.error("Migration %s (%s) failed for store %s: %s",
                             migration["version"], migration["name"], tenant.store_id, e)
                raise MigrationFailed(f"Migration {migration['version']} failed: {e}",
                                      migration_id=migration_id)
        finally:
            conn.close()
        logger.info("Migration %s (%s) applied for store %s in %dms",
                    migration["version"], migration["name"], tenant.store_id, elapsed)
        return self.status(migration_id, tenant.store_id)

    def reset(self, migration_id: str, store_id: str, sql_text: Optional[str] = None) -> MigrationStatus:
        """Operator action: clear a store's status (optionally replacing the SQL) so it can re-run."""
        tenant = TenantContext.resolve(store_id)
        migration = self._require(migration_id)
        if sql_text is not None:
            validate_migration_sql(sql_text)
            with db_connection_row(self.store.db_path) as conn:
                conn.execute("UPDATE plugin_migrations SET sql_text = ?, checksum = ?, updated_at = ? WHERE id = ?",
                             (sql_text, checksum(sql_text), datetime.now(timezone.utc).isoformat(),
                              migration_id))
                conn.commit()
        with self.databases.connect(tenant) as conn:
            conn.execute("DELETE FROM _plugin_migrations WHERE migration_id = ?", (migration_id,))
            conn.commit()
        logger.info("Migration %s reset for store %s", migration["version"], tenant.store_id)
        return self.status(migration_id, tenant.store_id)

    def apply_pending(self, plugin_id: str, store_id: str) -> list[MigrationStatus]:
        """Apply every pending migration in version order, stopping at the first failure."""
        results = []
        for migration in self.list_for_plugin(plugin_id):
            current = self.status(migration["id"], store_id)
            if current.status == APPLIED:
                continue
            if current.status == FAILED:
                results.append(current)
                break
            try:
                results.append(self.apply(migration["id"], store_id))
            except MigrationFailed:
                results.append(self.status(migration["id"], store_id))
                break
        return results
