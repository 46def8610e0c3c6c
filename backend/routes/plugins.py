"""Plugin management endpoints: manifests, artifacts, installs and lifecycle."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from audit import audit
from auth import verify_api_key, require_store, get_runtime
from models import ArtifactSave, ArtifactToggle, ConfigUpdate, InstallRequest, PluginStatusUpdate
from plugin_runtime.manifest import PluginManifest
from plugin_runtime.tenant import TenantContext

router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# ── Plugins ──

@router.get("/api/plugins", dependencies=[Depends(verify_api_key)])
async def list_plugins(request: Request):
    return get_runtime(request).store.list_plugins()


@router.post("/api/plugins", dependencies=[Depends(verify_api_key)])
async def register_plugin(manifest: PluginManifest, request: Request):
    """Register a plugin manifest, or update the plugin with the same slug."""
    plugin = get_runtime(request).register_plugin(manifest)
    audit("plugin_registered", actor="operator", ip_address=_client_ip(request),
          endpoint=request.url.path, method="POST", status_code=200,
          metadata={"slug": plugin["slug"], "version": plugin["version"]})
    return plugin


@router.get("/api/plugins/{slug}", dependencies=[Depends(verify_api_key)])
async def get_plugin(slug: str, request: Request):
    """A plugin with its artifacts (without source) and installs."""
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    return {
        **plugin,
        "artifacts": runtime.store.list_artifacts(plugin["id"], include_source=False),
        "installs": runtime.store.list_installs(plugin_id=plugin["id"]),
    }


@router.put("/api/plugins/{slug}/status", dependencies=[Depends(verify_api_key)])
async def set_plugin_status(slug: str, req: PluginStatusUpdate, request: Request):
    return get_runtime(request).store.set_plugin_status(slug, req.status)


@router.delete("/api/plugins/{slug}", dependencies=[Depends(verify_api_key)])
async def delete_plugin(slug: str, request: Request):
    get_runtime(request).store.delete_plugin(slug)
    audit("plugin_deleted", actor="operator", ip_address=_client_ip(request),
          endpoint=request.url.path, method="DELETE", status_code=200, metadata={"slug": slug})
    return {"status": "deleted", "slug": slug}


# ── Artifacts ──

@router.put("/api/plugins/{slug}/artifacts", dependencies=[Depends(verify_api_key)])
async def save_artifact(slug: str, req: ArtifactSave, request: Request):
    """Create or replace one artifact. Source that fails validation is rejected with 422."""
    artifact = get_runtime(request).save_artifact(
        slug, req.kind, req.key, req.source, method=req.method or "", name=req.name or "",
        category=req.category or "", route=req.route or "", enabled=req.enabled,
    )
    audit("artifact_saved", actor="operator", ip_address=_client_ip(request),
          endpoint=request.url.path, method="PUT", status_code=200,
          metadata={"slug": slug, "kind": artifact["kind"], "key": artifact["key"],
                    "hash": artifact["source_hash"]})
    return artifact


@router.get("/api/plugins/{slug}/artifacts", dependencies=[Depends(verify_api_key)])
async def list_artifacts(slug: str, request: Request, kind: Optional[str] = None,
                         include_source: bool = False):
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    return runtime.store.list_artifacts(plugin["id"], kind=kind, include_source=include_source)


@router.post("/api/plugins/{slug}/artifacts/{artifact_id}/toggle", dependencies=[Depends(verify_api_key)])
async def toggle_artifact(slug: str, artifact_id: str, req: ArtifactToggle, request: Request):
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    artifact = runtime.store.get_artifact(artifact_id)
    if not artifact or artifact["plugin_id"] != plugin["id"]:
        raise HTTPException(status_code=404, detail="Artifact not found")
    updated = runtime.store.set_artifact_enabled(artifact_id, req.enabled)
    updated.pop("source_text", None)
    return updated


# ── Installs & lifecycle ──

@router.get("/api/plugins/{slug}/installs", dependencies=[Depends(verify_api_key)])
async def list_installs(slug: str, request: Request):
    runtime = get_runtime(request)
    plugin = runtime.store.require_plugin(slug)
    return runtime.store.list_installs(plugin_id=plugin["id"])


@router.post("/api/plugins/{slug}/install", dependencies=[Depends(verify_api_key)])
async def install_plugin(slug: str, request: Request, req: Optional[InstallRequest] = None,
                         tenant: TenantContext = Depends(require_store)):
    result = await get_runtime(request).lifecycle.install(slug, tenant.store_id,
                                                          req.config if req else None)
    if result["created"]:
        audit("plugin_installed", actor="operator", store_id=tenant.store_id,
              ip_address=_client_ip(request), endpoint=request.url.path, method="POST",
              status_code=200, metadata={"slug": slug, "migrations": len(result.get("migrations", []))})
    return result


@router.post("/api/plugins/{slug}/enable", dependencies=[Depends(verify_api_key)])
async def enable_plugin(slug: str, request: Request, tenant: TenantContext = Depends(require_store)):
    result = await get_runtime(request).lifecycle.set_enabled(slug, tenant.store_id, True)
    audit("plugin_enabled", actor="operator", store_id=tenant.store_id, ip_address=_client_ip(request),
          endpoint=request.url.path, method="POST", status_code=200, metadata={"slug": slug})
    return result


@router.post("/api/plugins/{slug}/disable", dependencies=[Depends(verify_api_key)])
async def disable_plugin(slug: str, request: Request, tenant: TenantContext = Depends(require_store)):
    result = await get_runtime(request).lifecycle.set_enabled(slug, tenant.store_id, False)
    audit("plugin_disabled", actor="operator", store_id=tenant.store_id, ip_address=_client_ip(request),
          endpoint=request.url.path, method="POST", status_code=200, metadata={"slug": slug})
    return result


@router.post("/api/plugins/{slug}/uninstall", dependencies=[Depends(verify_api_key)])
async def uninstall_plugin(slug: str, request: Request, tenant: TenantContext = Depends(require_store)):
    result = await get_runtime(request).lifecycle.uninstall(slug, tenant.store_id)
    audit("plugin_uninstalled", actor="operator", store_id=tenant.store_id,
          ip_address=_client_ip(request), endpoint=request.url.path, method="POST",
          status_code=200, metadata={"slug": slug})
    return result


@router.put("/api/plugins/{slug}/config", dependencies=[Depends(verify_api_key)])
async def update_plugin_config(slug: str, req: ConfigUpdate, request: Request,
                               tenant: TenantContext = Depends(require_store)):
    result = await get_runtime(request).lifecycle.update_config(slug, tenant.store_id, req.config)
    audit("plugin_config_updated", actor="operator", store_id=tenant.store_id,
          ip_address=_client_ip(request), endpoint=request.url.path, method="PUT",
          status_code=200, metadata={"slug": slug})
    return result
