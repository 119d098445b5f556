from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portalauth.api.error_handling import register_exception_handlers
from portalauth.api.gates import register_gate_handlers
from portalauth.api.routes import auth_router, sso_router
from portalauth.api.schemas import HealthResponse
from portalauth.config import Settings, get_settings
from portalauth.logging import get_logger, set_correlation_id
from portalauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # No wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5000",
        "http://localhost:5173",
        "http://127.0.0.1:5000",
        "http://127.0.0.1:5173",
    ]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the portal auth application.

    When ``runtime`` is omitted it is created on startup from the environment
    and closed on shutdown.
    """

    settings = runtime.settings if runtime is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = Runtime(settings)
        purged = app.state.runtime.store.purge_expired_sessions()
        logger.info("startup_complete", expired_sessions_purged=purged)
        yield
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")

    app = FastAPI(title="Portal Auth", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs and the response with ``X-Request-ID`` (client-supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        # setdefault keeps the SSO login route's own frame policy
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/healthz", response_model=HealthResponse, tags=["health"])
    async def healthz(request: Request):
        status = request.app.state.runtime.health()
        healthy = status["store"] == "ok" and status["cache"] != "unavailable"
        body = HealthResponse(status="ok" if healthy else "degraded", **status)
        return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())

    register_exception_handlers(app)
    register_gate_handlers(app)
    app.include_router(auth_router)
    app.include_router(sso_router)
    return app


app = create_app()
