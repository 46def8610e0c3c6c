"""
Audit Logger — Security event tracking for the plugin host.
Logs security-relevant events to the audit_log table.
"""

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Optional

from db import db_connection

logger = logging.getLogger(__name__)

_audit_db_path: Optional[Path] = None


def configure(db_path: Optional[Path]):
    """Point the audit log at a platform database (called by the runtime on start)."""
    global _audit_db_path
    _audit_db_path = db_path


class AuditLogger:
    """Log security-relevant events to audit_log table."""

    # Known event types for validation
    EVENT_TYPES = {
        "auth_failure",
        "admin_request",
        "tenant_rejected",
        "controller_invoked",
        "controller_failed",
        "plugin_registered",
        "plugin_deleted",
        "artifact_saved",
        "plugin_installed",
        "plugin_enabled",
        "plugin_disabled",
        "plugin_uninstalled",
        "plugin_config_updated",
        "migration_applied",
        "migration_failed",
        "migration_reset",
        "cron_run",
    }

    @staticmethod
    def log(
        event_type: str,
        actor: Optional[str] = None,
        store_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        request_summary: Optional[str] = None,
        metadata: Optional[dict] = None,
    ):
        """Log an audit event to the database.

        Args:
            event_type: Type of event (should be in EVENT_TYPES)
            actor: Who performed the action (plugin slug, "operator", or "scheduler")
            store_id: Tenant the action was performed for
            ip_address: Client IP address
            endpoint: API endpoint path
            method: HTTP method (GET, POST, etc.)
            status_code: HTTP response status code
            request_summary: Brief description of the request (truncated to 500 chars)
            metadata: Additional context as JSON-serializable dict
        """
        if event_type not in AuditLogger.EVENT_TYPES:
            logger.warning("Unknown audit event type: %s", event_type)

        entry_id = f"aud_{uuid.uuid4().hex[:12]}"

        try:
            with db_connection(_audit_db_path) as conn:
                conn.execute(
                    """INSERT INTO audit_log
                       (id, timestamp, event_type, actor, store_id, ip_address, endpoint,
                        method, status_code, request_summary, metadata)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry_id,
                        time.time(),
                        event_type,
                        actor,
                        store_id,
                        ip_address,
                        endpoint,
                        method,
                        status_code,
                        (request_summary or "")[:500],
                        json.dumps(metadata, default=str) if metadata else None,
                    ),
                )
                conn.commit()
        except Exception as e:
            # Don't let audit failures break the application
            logger.error("Audit log failed: %s", e)

    @staticmethod
    def query(
        event_type: Optional[str] = None,
        store_id: Optional[str] = None,
        since: Optional[float] = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query audit log entries, newest first."""
        conditions = []
        params = []

        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)
        if store_id:
            conditions.append("store_id = ?")
            params.append(store_id)
        if since:
            conditions.append("timestamp > ?")
            params.append(since)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        try:
            with db_connection(_audit_db_path) as conn:
                conn.row_factory = lambda c, r: dict(
                    zip([col[0] for col in c.description], r)
                )
                rows = conn.execute(
                    f"""SELECT * FROM audit_log {where}
                        ORDER BY timestamp DESC LIMIT ?""",
                    params,
                ).fetchall()
                return rows
        except Exception as e:
            logger.error("Audit query failed: %s", e)
            return []


# Module-level convenience function
def audit(event_type: str, **kwargs):
    """Convenience function for logging audit events."""
    AuditLogger.log(event_type, **kwargs)


def audit_tenant_rejected(endpoint: str, ip_address: Optional[str] = None, reason: str = ""):
    """Log a request rejected for missing or invalid tenant identity."""
    audit(
        "tenant_rejected",
        ip_address=ip_address,
        endpoint=endpoint,
        metadata={"reason": reason} if reason else None,
    )
