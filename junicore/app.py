from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from junicore.api.error_handling import register_exception_handlers
from junicore.api.routes import router, webhook_router
from junicore.config import Settings, get_settings
from junicore.logging import get_logger, set_correlation_id
from junicore.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(
    runtime: Optional[Runtime] = None, *, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the ASGI application.

    When ``runtime`` is omitted one is constructed at startup from
    ``settings`` (or the environment) and closed at shutdown. A supplied
    runtime is only started and stopped, never closed.

    Run with ``uvicorn --factory junicore.app:create_app``.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    owns_runtime = runtime is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = Runtime(settings)
        current: Runtime = app.state.runtime
        await current.dispatcher.start()
        logger.info("app_started", owns_runtime=owns_runtime)
        try:
            yield
        finally:
            try:
                if owns_runtime:
                    await current.close()
                    app.state.runtime = None
                else:
                    await current.dispatcher.stop()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="junicore", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Propagate X-Request-ID (or a fresh UUID) into logs and the response."""
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
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(webhook_router)

    @app.get("/healthz")
    async def health(request: Request):
        """Report store and cache reachability."""
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        current: Optional[Runtime] = request.app.state.runtime
        if current is None:
            return JSONResponse(status_code=503, content={"status": "starting", "checks": {}})

        verify_store = getattr(current.store, "verify_connection", None)
        if callable(verify_store):
            db_ok = await _run_bounded("database", verify_store)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        redis_ok = True
        if current.cache is not None:
            redis_ok = await _run_bounded("redis", current.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        else:
            checks["redis"] = {"status": "not_configured"}

        checks["dispatcher"] = {"status": "running" if current.dispatcher.running else "stopped"}

        healthy = db_ok and redis_ok
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app
