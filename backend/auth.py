"""
Authentication and tenant resolution utilities.

Provides API key loading, the admin verification dependency, the store-id
dependency for storefront endpoints, a readiness check, and access to the
PluginRuntime held in app state.
"""

import os
import secrets
from pathlib import Path

from fastapi import HTTPException, Request

from audit import audit, audit_tenant_rejected
from core import PluginRuntime
from plugin_runtime.errors import TenantIsolationError
from plugin_runtime.tenant import TenantContext, resolve_store_id


_API_KEY_PATH = Path(__file__).parent / ".plugin_host_api_key"


def _load_or_create_api_key() -> str:
    if _API_KEY_PATH.exists():
        return _API_KEY_PATH.read_text().strip()
    key = secrets.token_urlsafe(32)
    _API_KEY_PATH.write_text(key)
    _API_KEY_PATH.chmod(0o600)
    return key


PLUGIN_HOST_API_KEY = os.environ.get("PLUGIN_HOST_API_KEY") or _load_or_create_api_key()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def verify_api_key(request: Request):
    """Dependency that checks for a valid API key in the X-API-Key header."""
    key = request.headers.get("x-api-key")
    if not key or not secrets.compare_digest(key, PLUGIN_HOST_API_KEY):
        audit("auth_failure", ip_address=_client_ip(request), endpoint=request.url.path,
              method=request.method, status_code=401)
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def require_store(request: Request) -> TenantContext:
    """Dependency that resolves the x-store-id header or rejects the request with 401."""
    try:
        return resolve_store_id(request.headers)
    except TenantIsolationError as e:
        audit_tenant_rejected(request.url.path, _client_ip(request), str(e))
        raise HTTPException(status_code=401, detail=str(e))


def require_ready(request: Request):
    """Dependency that returns 503 if the runtime is still starting."""
    runtime = request.app.state.runtime
    if not runtime._ready:
        raise HTTPException(status_code=503, detail="Plugin runtime is still initializing")


def get_runtime(request: Request) -> PluginRuntime:
    """Return the PluginRuntime instance from app state."""
    return request.app.state.runtime
