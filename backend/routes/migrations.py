"""Plugin migration endpoints: definitions are per plugin, status is per store."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from audit import audit
from auth import verify_api_key, require_store, get_runtime
from models import MigrationCreate, MigrationReset, SqlAnalyzeRequest
from plugin_runtime.errors import MigrationFailed
from plugin_runtime.migrations import analyze_sql
from plugin_runtime.tenant import TenantContext

router = APIRouter()


def _require_migration(runtime, slug: str, migration_id: str) -> dict:
    plugin = runtime.store.require_plugin(slug)
    migration = runtime.migrations.get(migration_id)
    if not migration or migration["plugin_id"] != plugin["id"]:
        raise HTTPException(status_code=404, detail="Migration not found")
    return migration


@router.post("/api/plugins/migrations/analyze", dependencies=[Depends(verify_api_key)])
async def analyze_migration_sql(req: SqlAnalyzeRequest):
    """Summarize what a migration would create, with warnings for risky statements."""
    return analyze_sql(req.sql)


@router.get("/api/plugins/{slug}/migrations", dependencies=[Depends(verify_api_key)])
async def list_migrations(slug: str, request: Request,
                          x_store_id: Optional[str] = Header(default=None)):
    """Migrations in version order; with x-store-id, each carries that store's status."""
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    store_id = TenantContext.resolve(x_store_id).store_id if x_store_id is not None else None
    return runtime.migrations.list_for_plugin(plugin["id"], store_id)


@router.post("/api/plugins/{slug}/migrations", dependencies=[Depends(verify_api_key)])
async def create_migration(slug: str, req: MigrationCreate, request: Request):
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    existing = {m["version"] for m in runtime.migrations.list_for_plugin(plugin["id"])}
    if req.version in existing:
        raise HTTPException(status_code=409, detail=f"Migration version {req.version} already exists")
    return runtime.migrations.register(plugin["id"], req.name, req.version, req.sql)


@router.post("/api/plugins/{slug}/migrations/apply-pending", dependencies=[Depends(verify_api_key)])
async def apply_pending_migrations(slug: str, request: Request,
                                   tenant: TenantContext = Depends(require_store)):
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    results = [s.to_dict() for s in runtime.migrations.apply_pending(plugin["id"], tenant.store_id)]
    failed = [r for r in results if r["status"] == "failed"]
    if results:
        audit("migration_failed" if failed else "migration_applied", actor="operator",
              store_id=tenant.store_id, endpoint=request.url.path, method="POST",
              metadata={"slug": slug, "migrations": [r["migration_id"] for r in results]})
    return {"success": not failed, "results": results}


@router.post("/api/plugins/{slug}/migrations/{migration_id}/apply", dependencies=[Depends(verify_api_key)])
async def apply_migration(slug: str, migration_id: str, request: Request,
                          tenant: TenantContext = Depends(require_store)):
    runtime = get_runtime(request)
    migration = _require_migration(runtime, slug, migration_id)
    try:
        status = runtime.migrations.apply(migration_id, tenant.store_id)
    except MigrationFailed:
        audit("migration_failed", actor="operator", store_id=tenant.store_id,
              endpoint=request.url.path, method="POST", status_code=409,
              metadata={"slug": slug, "version": migration["version"]})
        raise
    audit("migration_applied", actor="operator", store_id=tenant.store_id,
          endpoint=request.url.path, method="POST", status_code=200,
          metadata={"slug": slug, "version": migration["version"]})
    return status.to_dict()


@router.post("/api/plugins/{slug}/migrations/{migration_id}/reset", dependencies=[Depends(verify_api_key)])
async def reset_migration(slug: str, migration_id: str, request: Request,
                          req: Optional[MigrationReset] = None,
                          tenant: TenantContext = Depends(require_store)):
    """Clear a store's status for a migration, optionally replacing its SQL, so it can run again."""
    runtime = get_runtime(request)
    migration = _require_migration(runtime, slug, migration_id)
    status = runtime.migrations.reset(migration_id, tenant.store_id, req.sql if req else None)
    audit("migration_reset", actor="operator", store_id=tenant.store_id,
          endpoint=request.url.path, method="POST", status_code=200,
          metadata={"slug": slug, "version": migration["version"], "sql_replaced": bool(req and req.sql)})
    return status.to_dict()
