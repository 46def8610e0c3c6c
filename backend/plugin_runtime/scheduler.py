"""
PluginScheduler — runs plugin cron jobs.

Jobs live in the platform database (`plugin_cron`). Each tick dispatches every
enabled job that is due and whose plugin is installed and enabled for the
job's store. A job runs at most once at a time: a job still running when the
next tick comes is skipped for that tick. After every run the bookkeeping
(last/next run, counters, status) is written whatever the outcome; failures
are logged and not retried until the next scheduled time.
"""

import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from audit import audit
from config import DEFAULT_JOB_TIMEOUT, DEFAULT_MAX_FAILURES, MAX_TIMEOUT, SCHEDULER_TICK_INTERVAL
from db import db_connection_row
from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.cron import CronExpression
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.errors import ArtifactNotFound, PluginRuntimeError
from plugin_runtime.store import ManifestStore
from plugin_runtime.tenant import TenantContext

logger = logging.getLogger(__name__)

_UPDATABLE = {"description", "cron_expression", "params", "is_enabled", "timeout_seconds", "max_failures"}


def _as_utc(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime) -> str:
    return _as_utc(dt).isoformat(timespec="seconds")


def _job(row) -> Optional[dict]:
    if row is None:
        return None
    job = dict(row)
    try:
        job["params"] = json.loads(job.get("params") or "{}")
    except (json.JSONDecodeError, TypeError):
        job["params"] = {}
    job["is_enabled"] = bool(job["is_enabled"])
    return job


class PluginScheduler:
    def __init__(self, store: ManifestStore, engine: ExecutionEngine, injector: CapabilityInjector,
                 tick_interval: float = SCHEDULER_TICK_INTERVAL,
                 default_timeout: int = DEFAULT_JOB_TIMEOUT,
                 default_max_failures: int = DEFAULT_MAX_FAILURES):
        self.store = store
        self.engine = engine
        self.injector = injector
        self._db_path: Path = store.db_path
        self._tick_interval = tick_interval
        self._default_timeout = default_timeout
        self._default_max_failures = default_max_failures
        self._running_jobs: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    # ── Loop ──

    def start(self):
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop())
        logger.info("PluginScheduler started (tick every %ss)", self._tick_interval)

    async def stop(self):
        self._running = False
        if self._loop_task and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        await self.wait_idle()

    async def _loop(self):
        """Main scheduler tick loop."""
        while self._running:
            try:
                self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("PluginScheduler tick error: %s", e)
            await asyncio.sleep(self._tick_interval)

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Dispatch every due job that isn't already running. Returns dispatched job ids."""
        now = _as_utc(now)
        with db_connection_row(self._db_path) as conn:
            rows = conn.execute(
                """SELECT c.* FROM plugin_cron c
                   JOIN plugins p ON p.id = c.plugin_id
                   JOIN plugin_installs i ON i.plugin_id = c.plugin_id AND i.store_id = c.store_id
                   WHERE c.is_enabled = 1 AND c.next_run_at <= ?
                     AND c.consecutive_failures < c.max_failures
                     AND p.status = 'active' AND i.is_enabled = 1
                   ORDER BY c.next_run_at""",
                (_iso(now),),
            ).fetchall()

        dispatched = []
        for row in rows:
            job = _job(row)
            if job["id"] in self._running_jobs:
                logger.info("Cron job '%s' still running; skipped this tick", job["name"])
                continue
            self._running_jobs.add(job["id"])
            task = asyncio.create_task(self._guarded_run(job, now))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched.append(job["id"])
        return dispatched

    async def wait_idle(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run_now(self, job_id: str) -> dict:
        """Run a job immediately under the same single-flight guard as scheduled runs."""
        job = self.get_job(job_id)
        if not job:
            raise ArtifactNotFound(f"Cron job '{job_id}' not found")
        if job_id in self._running_jobs:
            return {"status": "skipped", "error": "job is already running"}
        self._running_jobs.add(job_id)
        return await self._guarded_run(job, _as_utc(None))

    async def _guarded_run(self, job: dict, now: datetime) -> dict:
        try:
            return await self._run_job(job, now)
        finally:
            self._running_jobs.discard(job["id"])

    async def _run_job(self, job: dict, now: datetime) -> dict:
        status, error = "success", None
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            artifact = self.store.get_artifact(job["handler_artifact_id"])
            if not artifact or not artifact["enabled"]:
                raise ArtifactNotFound(f"Handler for cron job '{job['name']}' is missing or disabled")
            plugin = self.store.get_plugin_by_id(job["plugin_id"])
            unit = self.engine.compile(artifact)
            capset = self.injector.for_cron(
                TenantContext.resolve(job["store_id"]), plugin,
                job={"id": job["id"], "name": job["name"]},
                params=job["params"], last_run_at=job.get("last_run_at"),
            )
            timeout = min(job.get("timeout_seconds") or self._default_timeout, MAX_TIMEOUT)
            await self.engine.invoke(unit, capset, timeout=timeout)
            logger.info("Cron job '%s' (%s) for store %s succeeded",
                        job["name"], job["id"], job["store_id"])
        except PluginRuntimeError as e:
            status, error = "failed", str(e)
            logger.error("Cron job '%s' (%s) for store %s failed: %s",
                         job["name"], job["id"], job["store_id"], e)
        except Exception as e:
            status, error = "failed", f"{type(e).__name__}: {e}"
            logger.exception("Cron job '%s' crashed", job["name"])

        duration_ms = int((loop.time() - started) * 1000)
        self._record_run(job, now, status, error)
        audit("cron_run", actor="scheduler", store_id=job["store_id"],
              metadata={"job": job["name"], "status": status, "duration_ms": duration_ms})
        return {"status": status, "error": error, "duration_ms": duration_ms}

    def _record_run(self, job: dict, now: datetime, status: str, error: Optional[str]):
        try:
            next_run = _iso(CronExpression.parse(job["cron_expression"]).next_after(now))
        except ValueError as e:
            logger.error("Cron job '%s' has no next run: %s; disabling", job["name"], e)
            next_run = None
        ok = status == "success"
        with db_connection_row(self._db_path) as conn:
            conn.execute(
                """UPDATE plugin_cron SET
                       last_run_at = ?, next_run_at = ?, last_status = ?, last_error = ?,
                       run_count = run_count + 1,
                       success_count = success_count + ?,
                       failure_count = failure_count + ?,
                       consecutive_failures = CASE WHEN ? THEN 0 ELSE consecutive_failures + 1 END,
                       is_enabled = CASE WHEN ? IS NULL THEN 0 ELSE is_enabled END,
                       updated_at = ?
                   WHERE id = ?""",
                (_iso(now), next_run, status, error, int(ok), int(not ok), int(ok),
                 next_run, _iso(datetime.now(timezone.utc)), job["id"]),
            )
            conn.commit()
            failures = conn.execute("SELECT consecutive_failures, max_failures FROM plugin_cron WHERE id = ?",
                                    (job["id"],)).fetchone()
        if failures and failures["consecutive_failures"] >= failures["max_failures"]:
            logger.warning("Cron job '%s' reached %d consecutive failures; paused until re-enabled",
                           job["name"], failures["consecutive_failures"])

    # ── Job CRUD ──

    def create_job(self, plugin_id: str, store_id: str, name: str, cron_expression: str,
                   handler_artifact_id: str, params: Optional[dict] = None, description: str = "",
                   timeout_seconds: Optional[int] = None, max_failures: Optional[int] = None,
                   now: Optional[datetime] = None) -> dict:
        """Create a scheduled job. Raises ValueError on a bad expression or duplicate name."""
        tenant = TenantContext.resolve(store_id)
        next_run = _iso(CronExpression.parse(cron_expression).next_after(_as_utc(now)))
        job_id = f"cron_{uuid.uuid4().hex[:12]}"
        stamp = _iso(datetime.now(timezone.utc))
        try:
            with db_connection_row(self._db_path) as conn:
                conn.execute(
                    """INSERT INTO plugin_cron
                       (id, plugin_id, store_id, name, description, cron_expression,
                        handler_artifact_id, params, is_enabled, timeout_seconds, max_failures,
                        next_run_at, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
                    (job_id, plugin_id, tenant.store_id, name, description, cron_expression.strip(),
                     handler_artifact_id, json.dumps(params or {}),
                     int(timeout_seconds or self._default_timeout),
                     int(max_failures or self._default_max_failures), next_run, stamp, stamp),
                )
                conn.commit()
        except sqlite3.IntegrityError:
            raise ValueError(f"Cron job '{name}' already exists for store {tenant.store_id}")
        logger.info("Cron job '%s' created for store %s, next run %s", name, tenant.store_id, next_run)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[dict]:
        with db_connection_row(self._db_path) as conn:
            return _job(conn.execute("SELECT * FROM plugin_cron WHERE id = ?", (job_id,)).fetchone())

    def find_job(self, plugin_id: str, store_id: str, name: str) -> Optional[dict]:
        with db_connection_row(self._db_path) as conn:
            return _job(conn.execute(
                "SELECT * FROM plugin_cron WHERE plugin_id = ? AND store_id = ? AND name = ?",
                (plugin_id, store_id, name),
            ).fetchone())

    def list_jobs(self, plugin_id: Optional[str] = None, store_id: Optional[str] = None) -> list[dict]:
        conditions, params = [], []
        if plugin_id:
            conditions.append("plugin_id = ?")
            params.append(plugin_id)
        if store_id:
            conditions.append("store_id = ?")
            params.append(store_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with db_connection_row(self._db_path) as conn:
            rows = conn.execute(f"SELECT * FROM plugin_cron {where} ORDER BY name", params).fetchall()
        return [_job(r) for r in rows]

    def update_job(self, job_id: str, now: Optional[datetime] = None, **fields) -> dict:
        """Update job fields. Re-enabling clears the failure streak."""
        job = self.get_job(job_id)
        if not job:
            raise ArtifactNotFound(f"Cron job '{job_id}' not found")
        updates = {k: v for k, v in fields.items() if k in _UPDATABLE and v is not None}
        if "cron_expression" in updates:
            expr = CronExpression.parse(updates["cron_expression"])
            updates["next_run_at"] = _iso(expr.next_after(_as_utc(now)))
        if "params" in updates:
            updates["params"] = json.dumps(updates["params"])
        if "is_enabled" in updates:
            updates["is_enabled"] = int(bool(updates["is_enabled"]))
            if updates["is_enabled"]:
                updates["consecutive_failures"] = 0
                if not job.get("next_run_at") and "next_run_at" not in updates:
                    expr = CronExpression.parse(fields.get("cron_expression") or job["cron_expression"])
                    updates["next_run_at"] = _iso(expr.next_after(_as_utc(now)))
        if not updates:
            return job
        updates["updated_at"] = _iso(datetime.now(timezone.utc))
        assignments = ", ".join(f"{k} = ?" for k in updates)
        with db_connection_row(self._db_path) as conn:
            conn.execute(f"UPDATE plugin_cron SET {assignments} WHERE id = ?",
                         list(updates.values()) + [job_id])
            conn.commit()
        return self.get_job(job_id)

    def delete_job(self, job_id: str) -> bool:
        with db_connection_row(self._db_path) as conn:
            cur = conn.execute("DELETE FROM plugin_cron WHERE id = ?", (job_id,))
            conn.commit()
        return cur.rowcount > 0

    @property
    def running_jobs(self) -> set[str]:
        return set(self._running_jobs)
