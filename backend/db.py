"""
Shared database utilities — consistent SQLite connection management.

All connections use WAL mode for concurrent read access and a 5-second
busy timeout to prevent SQLITE_BUSY errors under async load. The platform
database holds plugin manifests and artifacts; each store gets its own
tenant database file for plugin-owned tables.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from config import PLATFORM_DB_PATH

logger = logging.getLogger(__name__)

DB_PATH = PLATFORM_DB_PATH

# WAL mode is persistent per-database (set once, survives restarts).
# Track which files have been switched to avoid redundant PRAGMAs.
_wal_initialized: set[str] = set()


def _configure_connection(conn: sqlite3.Connection, path: str):
    """Apply standard connection settings: WAL mode, busy timeout, foreign keys."""
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA foreign_keys = ON")
    if path not in _wal_initialized:
        conn.execute("PRAGMA journal_mode = WAL")
        _wal_initialized.add(path)


def _open(path: Optional[Path]) -> tuple[sqlite3.Connection, str]:
    target = Path(path) if path else DB_PATH
    target.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(target))
    return conn, str(target)


@contextmanager
def db_connection(path: Optional[Path] = None):
    """Context manager for SQLite connections — ensures close on exit.
    Configures WAL mode and busy timeout automatically."""
    conn, key = _open(path)
    _configure_connection(conn, key)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def db_connection_row(path: Optional[Path] = None):
    """Context manager that returns a connection with Row factory enabled.
    Configures WAL mode and busy timeout automatically."""
    conn, key = _open(path)
    conn.row_factory = sqlite3.Row
    _configure_connection(conn, key)
    try:
        yield conn
    finally:
        conn.close()


def get_readonly_connection(path: Path) -> sqlite3.Connection:
    """Open a read-only connection (for plugin SELECT queries).
    Uses URI mode to enforce read-only at the SQLite level."""
    uri = f"file:{path}?mode=ro"
    conn = sqlite3.connect(uri, uri=True)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn
