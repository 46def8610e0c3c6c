"""
Database schema — all CREATE TABLE statements for the platform database.

Called once at startup via init_db(). Tenant databases get their own
bookkeeping tables from plugin_runtime.tenant.init_tenant_db().
"""

import sqlite3
from pathlib import Path
from typing import Optional

from db import DB_PATH


def init_db(path: Optional[Path] = None):
    target = Path(path) if path else DB_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(target))
    c = conn.cursor()
    # Plugin manifests
    c.execute('''CREATE TABLE IF NOT EXISTS plugins (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        version TEXT NOT NULL,
        category TEXT DEFAULT 'utility',
        description TEXT DEFAULT '',
        status TEXT DEFAULT 'active',
        permissions TEXT DEFAULT '[]',
        config_schema TEXT DEFAULT '{}',
        manifest TEXT DEFAULT '{}',
        created_at TEXT,
        updated_at TEXT
    )''')
    # Plugin-authored source: pages, widgets, controllers, hooks, events, cron, lifecycle
    c.execute('''CREATE TABLE IF NOT EXISTS plugin_artifacts (
        id TEXT PRIMARY KEY,
        plugin_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        key TEXT NOT NULL,
        method TEXT NOT NULL DEFAULT '',
        name TEXT DEFAULT '',
        category TEXT DEFAULT '',
        route TEXT DEFAULT '',
        source_text TEXT NOT NULL,
        source_hash TEXT NOT NULL,
        enabled INTEGER DEFAULT 1,
        created_seq INTEGER NOT NULL,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (plugin_id, kind, key, method),
        FOREIGN KEY (plugin_id) REFERENCES plugins(id)
    )''')
    c.execute('CREATE INDEX IF NOT EXISTS idx_artifacts_kind_key ON plugin_artifacts(kind, key)')
    # Per-store install state
    c.execute('''CREATE TABLE IF NOT EXISTS plugin_installs (
        plugin_id TEXT NOT NULL,
        store_id TEXT NOT NULL,
        is_enabled INTEGER DEFAULT 1,
        config TEXT DEFAULT '{}',
        install_seq INTEGER NOT NULL,
        installed_at TEXT,
        updated_at TEXT,
        PRIMARY KEY (plugin_id, store_id),
        FOREIGN KEY (plugin_id) REFERENCES plugins(id)
    )''')
    c.execute('CREATE INDEX IF NOT EXISTS idx_installs_store ON plugin_installs(store_id)')
    # Monotonic counters (install order, artifact creation order)
    c.execute('''CREATE TABLE IF NOT EXISTS sequences (
        name TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )''')
    # Migration definitions (status is tracked per tenant database)
    c.execute('''CREATE TABLE IF NOT EXISTS plugin_migrations (
        id TEXT PRIMARY KEY,
        plugin_id TEXT NOT NULL,
        name TEXT NOT NULL,
        version TEXT NOT NULL,
        sql_text TEXT NOT NULL,
        checksum TEXT NOT NULL,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (plugin_id, version),
        FOREIGN KEY (plugin_id) REFERENCES plugins(id)
    )''')
    # Scheduled jobs
    c.execute('''CREATE TABLE IF NOT EXISTS plugin_cron (
        id TEXT PRIMARY KEY,
        plugin_id TEXT NOT NULL,
        store_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT DEFAULT '',
        cron_expression TEXT NOT NULL,
        handler_artifact_id TEXT NOT NULL,
        params TEXT DEFAULT '{}',
        is_enabled INTEGER DEFAULT 1,
        timeout_seconds INTEGER DEFAULT 300,
        max_failures INTEGER DEFAULT 5,
        last_run_at TEXT,
        next_run_at TEXT,
        last_status TEXT,
        last_error TEXT,
        run_count INTEGER DEFAULT 0,
        success_count INTEGER DEFAULT 0,
        failure_count INTEGER DEFAULT 0,
        consecutive_failures INTEGER DEFAULT 0,
        created_at TEXT,
        updated_at TEXT,
        UNIQUE (plugin_id, store_id, name),
        FOREIGN KEY (plugin_id) REFERENCES plugins(id)
    )''')
    c.execute('CREATE INDEX IF NOT EXISTS idx_cron_due ON plugin_cron(is_enabled, next_run_at)')
    # Audit log for security-relevant events
    c.execute('''CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        timestamp REAL NOT NULL,
        event_type TEXT NOT NULL,
        actor TEXT,
        store_id TEXT,
        ip_address TEXT,
        endpoint TEXT,
        method TEXT,
        status_code INTEGER,
        request_summary TEXT,
        metadata TEXT
    )''')
    c.execute('CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_log(event_type)')
    c.execute('CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor)')
    conn.commit()
    conn.close()
