"""Plugin cron job endpoints. Jobs belong to one plugin install in one store."""

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import verify_api_key, require_store, get_runtime
from models import CronJobCreate, CronJobUpdate
from plugin_runtime.errors import ArtifactNotFound
from plugin_runtime.tenant import TenantContext

router = APIRouter()


def _require_job(runtime, slug: str, store_id: str, name: str) -> dict:
    plugin = runtime.store.require_plugin(slug)
    job = runtime.scheduler.find_job(plugin["id"], store_id, name)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.get("/api/plugins/{slug}/cron", dependencies=[Depends(verify_api_key)])
async def list_cron_jobs(slug: str, request: Request, tenant: TenantContext = Depends(require_store)):
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    return runtime.scheduler.list_jobs(plugin_id=plugin["id"], store_id=tenant.store_id)


@router.post("/api/plugins/{slug}/cron", dependencies=[Depends(verify_api_key)])
async def create_cron_job(slug: str, req: CronJobCreate, request: Request,
                          tenant: TenantContext = Depends(require_store)):
    """Schedule a cron artifact (default: the one keyed by the job name) for this store."""
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    if not runtime.store.get_install(plugin["id"], tenant.store_id):
        raise ArtifactNotFound(f"Plugin '{slug}' is not installed for store '{tenant.store_id}'")
    handler_key = req.handler or req.name
    artifact = runtime.store.find_artifact(plugin["id"], "cron", handler_key)
    if not artifact:
        raise ArtifactNotFound(f"Plugin '{slug}' has no cron handler '{handler_key}'")
    if runtime.scheduler.find_job(plugin["id"], tenant.store_id, req.name):
        raise HTTPException(status_code=409, detail=f"Cron job '{req.name}' already exists")
    return runtime.scheduler.create_job(
        plugin["id"], tenant.store_id, req.name, req.cron_expression, artifact["id"],
        params=req.params, description=req.description or "",
        timeout_seconds=req.timeout_seconds, max_failures=req.max_failures,
    )


@router.patch("/api/plugins/{slug}/cron/{name}", dependencies=[Depends(verify_api_key)])
async def update_cron_job(slug: str, name: str, req: CronJobUpdate, request: Request,
                          tenant: TenantContext = Depends(require_store)):
    runtime = get_runtime(request)
    job = _require_job(runtime, slug, tenant.store_id, name)
    return runtime.scheduler.update_job(job["id"], **req.model_dump(exclude_none=True))


@router.delete("/api/plugins/{slug}/cron/{name}", dependencies=[Depends(verify_api_key)])
async def delete_cron_job(slug: str, name: str, request: Request,
                          tenant: TenantContext = Depends(require_store)):
    runtime = get_runtime(request)
    job = _require_job(runtime, slug, tenant.store_id, name)
    runtime.scheduler.delete_job(job["id"])
    return {"status": "deleted", "name": name}


@router.post("/api/plugins/{slug}/cron/{name}/run", dependencies=[Depends(verify_api_key)])
async def run_cron_job(slug: str, name: str, request: Request,
                       tenant: TenantContext = Depends(require_store)):
    """Run a job now. Returns status 'skipped' if a run is already in flight."""
    runtime = get_runtime(request)
    job = _require_job(runtime, slug, tenant.store_id, name)
    return await runtime.scheduler.run_now(job["id"])
