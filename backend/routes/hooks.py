"""Storefront hook and event endpoints. Scoped to the store in x-store-id."""

from fastapi import APIRouter, Depends, Request

from auth import require_store, require_ready, get_runtime
from models import EventEmitRequest, HookApplyRequest
from plugin_runtime.hooks import HOOK_POINTS
from plugin_runtime.tenant import TenantContext

router = APIRouter()


@router.get("/api/plugins/hooks", dependencies=[Depends(require_ready)])
async def list_hooks(request: Request, tenant: TenantContext = Depends(require_store)):
    """Every hook point with the handlers that would run for this store, in chain order."""
    hooks = get_runtime(request).hooks
    return [
        {
            "name": name,
            "valueType": value_type,
            "handlers": [{"plugin": h["plugin_slug"], "artifactId": h["id"]}
                         for h in hooks.handlers(tenant.store_id, name)],
        }
        for name, value_type in HOOK_POINTS.items()
    ]


@router.post("/api/plugins/hooks/{hook_name}", dependencies=[Depends(require_ready)])
async def apply_hook(hook_name: str, req: HookApplyRequest, request: Request,
                     tenant: TenantContext = Depends(require_store)):
    result = await get_runtime(request).hooks.apply(tenant.store_id, hook_name, req.input, req.context)
    return {
        "success": True,
        "data": result.value,
        "hookExecutions": [e.to_dict() for e in result.executions],
        "hooksExecuted": result.executed,
    }


@router.post("/api/plugins/events/{event_name}", dependencies=[Depends(require_ready)])
async def emit_event(event_name: str, req: EventEmitRequest, request: Request,
                     tenant: TenantContext = Depends(require_store)):
    """Schedule every handler for the event and return without waiting for them."""
    scheduled = get_runtime(request).events.emit(tenant.store_id, event_name, req.payload)
    return {"success": True, "event": event_name, "handlersScheduled": scheduled}
