from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from uniupdates.api.error_handling import register_exception_handlers
from uniupdates.api.routes import admin_users_router, build_auth_router
from uniupdates.config import Settings, get_settings
from uniupdates.logging import get_logger, set_correlation_id
from uniupdates.service.runtime import Runtime
from uniupdates.storage.models import ADMIN_TENANT, SITE_TENANT

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.runtime is None:
        app.state.runtime = Runtime(app.state.settings)
    logger.info("app_started", version=__version__)

    yield

    try:
        app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API application.

    An injected ``runtime`` is used as is; otherwise one is built from the
    environment when the app starts.
    """
    settings = runtime.settings if runtime is not None else get_settings()
    app = FastAPI(title="UniUpdates Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with an X-Request-ID, echoing the client's when given."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("API-Version", __version__)
        if settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.get("/healthz", tags=["health"])
    async def healthz(request: Request):
        """Liveness plus a bounded reachability check of the credential store."""
        store = request.app.state.runtime.store
        try:
            await asyncio.wait_for(
                asyncio.to_thread(store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="store")
            return JSONResponse(status_code=503, content={"status": "unhealthy", "store": "timeout"})
        except Exception as exc:
            logger.error("health_check_store_failed", error=str(exc))
            return JSONResponse(status_code=503, content={"status": "unhealthy", "store": "failed"})
        return {"status": "ok", "store": "ok"}

    register_exception_handlers(app)
    app.include_router(build_auth_router(ADMIN_TENANT))
    app.include_router(build_auth_router(SITE_TENANT))
    app.include_router(admin_users_router)
    return app


app = create_app()
