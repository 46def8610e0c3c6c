"""Plugin controller endpoint: `/api/plugins/{slug}/exec/{path}` for every HTTP method."""

import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response

from audit import audit, audit_tenant_rejected
from auth import require_ready, get_runtime
from plugin_runtime.manifest import HTTP_METHODS

router = APIRouter()


async def _read_body(request: Request):
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return raw.decode("utf-8", errors="replace")


@router.api_route("/api/plugins/{slug}/exec/{path:path}", methods=list(HTTP_METHODS),
                  dependencies=[Depends(require_ready)])
async def exec_controller(slug: str, path: str, request: Request):
    """Dispatch to the plugin controller registered for this method and path.

    The store is resolved from x-store-id inside the invoker; no plugin code
    runs for a request without it.
    """
    result = await get_runtime(request).controllers.invoke(
        slug, path, request.method, request.headers,
        query=dict(request.query_params), body=await _read_body(request),
    )
    status = result.status if isinstance(result.status, int) and 100 <= result.status <= 599 else 500
    client_ip = request.client.host if request.client else None
    if status == 401 and result.store_id is None:
        audit_tenant_rejected(request.url.path, client_ip, "missing or invalid x-store-id")
    else:
        audit("controller_invoked" if status < 500 else "controller_failed",
              actor=slug, store_id=result.store_id, ip_address=client_ip,
              endpoint=request.url.path, method=request.method, status_code=status)

    if status in (204, 304):
        return Response(status_code=status)
    return JSONResponse(status_code=status, content=result.body)
