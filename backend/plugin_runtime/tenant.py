"""
Tenant isolation — store identity and the per-store data handle.

Each store gets its own SQLite file under the tenant directory. Plugin code
never sees a connection: it only reaches the `TenantDataHandle` methods the
capability injector exposes, always bound to one resolved store.
"""

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from config import MAX_QUERY_LENGTH, MAX_SELECT_ROWS, STORE_HEADER
from db import db_connection_row, get_readonly_connection
from plugin_runtime.errors import CapabilityDenied, TenantIsolationError

logger = logging.getLogger(__name__)

STORE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_IDENTIFIER = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,63}$")

WRITE_PERMISSION = "database.write"

# Statements and functions a read-only query must never contain
_BLOCKED_QUERY_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "DROP", "ALTER", "CREATE",
    "REPLACE", "ATTACH", "DETACH", "PRAGMA", "REINDEX", "VACUUM",
    "LOAD_EXTENSION", "SAVEPOINT", "RELEASE", "RECURSIVE",
)
_BLOCKED_QUERY_RE = re.compile(r"\b(" + "|".join(_BLOCKED_QUERY_KEYWORDS) + r")\b")
_INTERNAL_TABLE_RE = re.compile(r"\b(_\w+|SQLITE_\w+)\b")


@dataclass(frozen=True)
class TenantContext:
    store_id: str

    @classmethod
    def resolve(cls, store_id: Any) -> "TenantContext":
        if isinstance(store_id, TenantContext):
            return store_id
        if not isinstance(store_id, str) or not STORE_ID_PATTERN.match(store_id):
            raise TenantIsolationError("A valid store id is required")
        return cls(store_id)


def resolve_store_id(headers: Mapping[str, str]) -> TenantContext:
    """Resolve the tenant from request headers (case-insensitive lookup)."""
    value = None
    for name, v in headers.items():
        if name.lower() == STORE_HEADER:
            value = v
            break
    if value is None:
        raise TenantIsolationError(f"Missing {STORE_HEADER} header")
    return TenantContext.resolve(value.strip())


# ── Tenant databases ──

def init_tenant_db(path: Path):
    """Create the runtime bookkeeping tables inside a tenant database."""
    with db_connection_row(path) as conn:
        conn.execute('''CREATE TABLE IF NOT EXISTS _plugin_migrations (
            migration_id TEXT PRIMARY KEY,
            plugin_id TEXT NOT NULL,
            version TEXT NOT NULL,
            status TEXT NOT NULL,
            checksum TEXT,
            applied_at TEXT,
            error TEXT,
            execution_ms INTEGER
        )''')
        conn.execute('''CREATE TABLE IF NOT EXISTS _plugin_data (
            plugin_id TEXT NOT NULL,
            data_key TEXT NOT NULL,
            data_value TEXT,
            updated_at TEXT,
            PRIMARY KEY (plugin_id, data_key)
        )''')
        conn.commit()


class TenantDatabases:
    """Locates (and lazily initializes) one SQLite file per store."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self._initialized: set[str] = set()

    def path_for(self, tenant: TenantContext) -> Path:
        tenant = TenantContext.resolve(tenant)
        path = self.base_dir / f"{tenant.store_id}.db"
        if tenant.store_id not in self._initialized:
            init_tenant_db(path)
            self._initialized.add(tenant.store_id)
        return path

    def connect(self, tenant: TenantContext):
        return db_connection_row(self.path_for(tenant))


# ── Data handle ──

def _check_identifier(name: str, what: str = "identifier") -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name) or name.lower().startswith("sqlite_"):
        raise CapabilityDenied(f"Invalid {what}: {name!r}")
    return name


def _where_clause(where: Optional[dict]) -> tuple[str, list]:
    if not where:
        return "", []
    if not isinstance(where, dict):
        raise CapabilityDenied("where must be a mapping of column -> value")
    parts, params = [], []
    for col, val in where.items():
        _check_identifier(col, "column")
        if val is None:
            parts.append(f"{col} IS NULL")
        elif isinstance(val, (list, tuple)):
            if not val:
                parts.append("0")
                continue
            parts.append(f"{col} IN ({', '.join('?' for _ in val)})")
            params.extend(val)
        else:
            parts.append(f"{col} = ?")
            params.append(val)
    return " WHERE " + " AND ".join(parts), params


def _order_clause(order_by: Optional[str]) -> str:
    if not order_by:
        return ""
    terms = []
    for term in str(order_by).split(","):
        bits = term.strip().split()
        if not bits or len(bits) > 2:
            raise CapabilityDenied(f"Invalid order_by: {order_by!r}")
        _check_identifier(bits[0], "column")
        direction = bits[1].upper() if len(bits) == 2 else "ASC"
        if direction not in ("ASC", "DESC"):
            raise CapabilityDenied(f"Invalid sort direction: {bits[1]!r}")
        terms.append(f"{bits[0]} {direction}")
    return " ORDER BY " + ", ".join(terms)


def _values_clause(values: dict) -> tuple[list[str], list]:
    if not isinstance(values, dict) or not values:
        raise CapabilityDenied("values must be a non-empty mapping")
    cols = [_check_identifier(c, "column") for c in values]
    params = [json.dumps(v) if isinstance(v, (dict, list)) else v for v in values.values()]
    return cols, params


class TenantDataHandle:
    """The `db` capability: table access bound to one store and one plugin."""

    methods = ("select", "get", "count", "insert", "update", "delete", "query",
               "get_data", "set_data", "delete_data")

    def __init__(self, tenant: TenantContext, databases: TenantDatabases,
                 plugin_id: str, permissions=()):
        self.tenant = TenantContext.resolve(tenant)
        self._databases = databases
        self._plugin_id = plugin_id
        self._permissions = frozenset(permissions or ())

    @property
    def can_write(self) -> bool:
        return WRITE_PERMISSION in self._permissions

    def _require_write(self):
        if not self.can_write:
            raise CapabilityDenied(f"Permission '{WRITE_PERMISSION}' is required for writes")

    def _table(self, table: str) -> str:
        return _check_identifier(table, "table")

    # ── Reads ──

    def select(self, table: str, where: Optional[dict] = None,
               order_by: Optional[str] = None, limit: int = 100) -> list[dict]:
        table = self._table(table)
        clause, params = _where_clause(where)
        limit = max(1, min(int(limit or 100), MAX_SELECT_ROWS))
        sql = f"SELECT * FROM {table}{clause}{_order_clause(order_by)} LIMIT {limit}"
        with self._databases.connect(self.tenant) as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def get(self, table: str, where: dict) -> Optional[dict]:
        rows = self.select(table, where=where, limit=1)
        return rows[0] if rows else None

    def count(self, table: str, where: Optional[dict] = None) -> int:
        table = self._table(table)
        clause, params = _where_clause(where)
        with self._databases.connect(self.tenant) as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}{clause}", params).fetchone()[0]

    def query(self, sql: str, params: Optional[list] = None) -> list[dict]:
        """Run a single read-only SELECT against the store's database."""
        if not isinstance(sql, str) or len(sql) > MAX_QUERY_LENGTH:
            raise CapabilityDenied(f"Query too long (max {MAX_QUERY_LENGTH} chars)")
        sql_clean = sql.strip().rstrip(";")
        if ";" in sql_clean:
            raise CapabilityDenied("Only single SQL statements are allowed")
        sql_upper = sql_clean.upper()
        if not (sql_upper.startswith("SELECT") or sql_upper.startswith("WITH")):
            raise CapabilityDenied("Only SELECT queries are allowed")
        blocked = _BLOCKED_QUERY_RE.search(sql_upper)
        if blocked:
            raise CapabilityDenied(f"'{blocked.group(1)}' is not allowed in read-only queries")
        internal = _INTERNAL_TABLE_RE.search(sql_upper)
        if internal:
            raise CapabilityDenied(f"Internal table '{internal.group(1).lower()}' is not reachable")
        conn = get_readonly_connection(self._databases.path_for(self.tenant))
        try:
            cursor = conn.execute(sql_clean, list(params or []))
            return [dict(row) for row in cursor.fetchmany(MAX_SELECT_ROWS)]
        except sqlite3.Error as e:
            raise CapabilityDenied(f"SQL error: {e}")
        finally:
            conn.close()

    # ── Writes ──

    def insert(self, table: str, values: dict) -> dict:
        self._require_write()
        table = self._table(table)
        cols, params = _values_clause(values)
        with self._databases.connect(self.tenant) as conn:
            cur = conn.execute(
                f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                params,
            )
            conn.commit()
            return {"inserted": cur.rowcount, "rowid": cur.lastrowid}

    def update(self, table: str, values: dict, where: dict) -> dict:
        self._require_write()
        if not where:
            raise CapabilityDenied("update requires a where clause")
        table = self._table(table)
        cols, params = _values_clause(values)
        clause, where_params = _where_clause(where)
        with self._databases.connect(self.tenant) as conn:
            cur = conn.execute(
                f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in cols)}{clause}",
                params + where_params,
            )
            conn.commit()
            return {"updated": cur.rowcount}

    def delete(self, table: str, where: dict) -> dict:
        self._require_write()
        if not where:
            raise CapabilityDenied("delete requires a where clause")
        table = self._table(table)
        clause, params = _where_clause(where)
        with self._databases.connect(self.tenant) as conn:
            cur = conn.execute(f"DELETE FROM {table}{clause}", params)
            conn.commit()
            return {"deleted": cur.rowcount}

    # ── Plugin key/value storage ──

    def get_data(self, key: str):
        with self._databases.connect(self.tenant) as conn:
            row = conn.execute(
                "SELECT data_value FROM _plugin_data WHERE plugin_id = ? AND data_key = ?",
                (self._plugin_id, str(key)),
            ).fetchone()
        if row is None or row["data_value"] is None:
            return None
        return json.loads(row["data_value"])

    def set_data(self, key: str, value) -> bool:
        self._require_write()
        with self._databases.connect(self.tenant) as conn:
            conn.execute(
                """INSERT INTO _plugin_data (plugin_id, data_key, data_value, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(plugin_id, data_key) DO UPDATE SET
                   data_value = excluded.data_value, updated_at = excluded.updated_at""",
                (self._plugin_id, str(key), json.dumps(value),
                 datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
        return True

    def delete_data(self, key: str) -> bool:
        self._require_write()
        with self._databases.connect(self.tenant) as conn:
            cur = conn.execute("DELETE FROM _plugin_data WHERE plugin_id = ? AND data_key = ?",
                               (self._plugin_id, str(key)))
            conn.commit()
        return cur.rowcount > 0
