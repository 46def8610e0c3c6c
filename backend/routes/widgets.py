"""Widget, admin page and navigation endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from auth import verify_api_key, require_store, require_ready, get_runtime
from models import RenderRequest
from plugin_runtime.tenant import TenantContext

router = APIRouter()


@router.get("/api/plugins/widgets", dependencies=[Depends(require_ready)])
async def list_widgets(request: Request, page_type: Optional[str] = None,
                       tenant: TenantContext = Depends(require_store)):
    return get_runtime(request).widgets.list_widgets(tenant.store_id, page_type)


@router.post("/api/plugins/widgets/render", dependencies=[Depends(require_ready)])
async def render_page_widgets(request: Request, page_type: str, req: Optional[RenderRequest] = None,
                              tenant: TenantContext = Depends(require_store)):
    """Render every widget placed on a page type; failures are reported per widget."""
    props = req.props if req else None
    return await get_runtime(request).widgets.render_page_widgets(tenant.store_id, page_type, props)


@router.get("/api/plugins/navigation", dependencies=[Depends(verify_api_key), Depends(require_ready)])
async def admin_navigation(request: Request, tenant: TenantContext = Depends(require_store)):
    return get_runtime(request).widgets.admin_navigation(tenant.store_id)


@router.post("/api/plugins/{slug}/widgets/{key}/render", dependencies=[Depends(require_ready)])
async def render_widget(slug: str, key: str, request: Request, req: Optional[RenderRequest] = None,
                        tenant: TenantContext = Depends(require_store)):
    props = req.props if req else None
    return await get_runtime(request).widgets.render_widget(tenant.store_id, slug, key, props)


@router.post("/api/plugins/{slug}/admin-pages/{page_key}/render",
             dependencies=[Depends(verify_api_key), Depends(require_ready)])
async def render_admin_page(slug: str, page_key: str, request: Request,
                            req: Optional[RenderRequest] = None,
                            tenant: TenantContext = Depends(require_store)):
    props = req.props if req else None
    return await get_runtime(request).widgets.render_admin_page(tenant.store_id, slug, page_key, props)
