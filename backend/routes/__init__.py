"""
Route registration — includes all API routers into the FastAPI app and maps
plugin runtime errors onto HTTP status codes.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from plugin_runtime.errors import (
    ArtifactNotFound, CapabilityDenied, CompileError, ExecutionTimeout, MigrationFailed,
    PluginInUse, PluginRuntimeError, TenantIsolationError,
)
from routes.health import router as health_router
from routes.hooks import router as hooks_router
from routes.widgets import router as widgets_router
from routes.migrations import router as migrations_router
from routes.jobs import router as jobs_router
from routes.exec import router as exec_router
from routes.plugins import router as plugins_router

logger = logging.getLogger(__name__)

# Most specific first: the first matching class wins
ERROR_STATUS = (
    (ArtifactNotFound, 404),
    (TenantIsolationError, 401),
    (CapabilityDenied, 403),
    (CompileError, 422),
    (PluginInUse, 409),
    (MigrationFailed, 409),
    (ExecutionTimeout, 504),
    (PluginRuntimeError, 500),
)


def status_for(exc: Exception) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


async def _runtime_error_handler(request: Request, exc: PluginRuntimeError):
    status = status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


async def _value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


def register_routes(app: FastAPI):
    """Mount all API routers onto the app.

    Routers with fixed paths under /api/plugins go before the plugins router
    so `/api/plugins/hooks` is never read as a plugin slug.
    """
    app.add_exception_handler(PluginRuntimeError, _runtime_error_handler)
    app.add_exception_handler(ValueError, _value_error_handler)
    app.include_router(health_router)
    app.include_router(hooks_router)
    app.include_router(widgets_router)
    app.include_router(migrations_router)
    app.include_router(jobs_router)
    app.include_router(exec_router)
    app.include_router(plugins_router)
