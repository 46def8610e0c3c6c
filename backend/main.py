"""
Storefront Plugin Host — sandboxed extension runtime for the admin console.
FastAPI backend serving plugin management, hooks, widgets and controllers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from auth import PLUGIN_HOST_API_KEY
from config import CORS_ORIGINS, SYSTEM_NAME, VERSION
from core import PluginRuntime
from routes import register_routes

logger = logging.getLogger(__name__)


def _make_lifespan(runtime: Optional[PluginRuntime]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        _redacted = PLUGIN_HOST_API_KEY[-4:] if len(PLUGIN_HOST_API_KEY) > 4 else "****"
        logger.info("API key: ****...%s", _redacted)
        logger.info("Set X-API-Key header to authenticate admin requests.")
        rt = runtime or PluginRuntime()
        app.state.runtime = rt
        try:
            await rt.start()
        except Exception as e:
            logger.error("Startup error: %s", e)
        yield
        await rt.shutdown()

    return lifespan


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


class AuditMiddleware(BaseHTTPMiddleware):
    """Log state-changing admin requests to the audit log."""

    AUDIT_PREFIX = "/api/plugins"
    AUDIT_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        # Controller calls are audited by the exec route itself
        path = request.url.path
        if (request.method in self.AUDIT_METHODS and path.startswith(self.AUDIT_PREFIX)
                and "/exec/" not in path):
            from audit import audit
            audit(
                "admin_request",
                store_id=request.headers.get("x-store-id"),
                ip_address=request.client.host if request.client else None,
                endpoint=path,
                method=request.method,
                status_code=response.status_code,
            )

        return response


def create_app(runtime: Optional[PluginRuntime] = None) -> FastAPI:
    """Build the FastAPI app. Tests pass a pre-built runtime."""
    app = FastAPI(
        title=SYSTEM_NAME,
        description="Sandboxed plugin extension runtime for the storefront admin console",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=_make_lifespan(runtime),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(AuditMiddleware)
    register_routes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
