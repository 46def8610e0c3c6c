"""Health, config, status and audit endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from audit import AuditLogger
from auth import verify_api_key, get_runtime
from config import SYSTEM_NAME, VERSION
from plugin_runtime.hooks import HOOK_POINTS
from plugin_runtime.manifest import ARTIFACT_KINDS
from plugin_runtime.ui_primitives import UI_COMPONENTS

router = APIRouter()


@router.get("/health")
def health(request: Request):
    runtime = get_runtime(request)
    return {"status": "ok", "runtime_ready": runtime._ready}


@router.get("/api/config")
async def get_public_config():
    """Return system name, version and the extension points plugins can target. No auth required."""
    return {
        "system_name": SYSTEM_NAME,
        "version": VERSION,
        "artifact_kinds": list(ARTIFACT_KINDS),
        "hook_points": HOOK_POINTS,
        "ui_components": sorted(UI_COMPONENTS),
    }


@router.get("/api/status", dependencies=[Depends(verify_api_key)])
async def runtime_status(request: Request):
    return get_runtime(request).get_status()


@router.get("/api/audit", dependencies=[Depends(verify_api_key)])
async def audit_log(event_type: Optional[str] = None, store_id: Optional[str] = None,
                    since: Optional[float] = None, limit: int = 100):
    return AuditLogger.query(event_type=event_type, store_id=store_id, since=since,
                             limit=max(1, min(limit, 1000)))
