from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from timekeeper.api.error_handling import register_exception_handlers
from timekeeper.api.routes import router
from timekeeper.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from timekeeper.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", redis_enabled=runtime.cache is not None)

    yield

    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Timekeeper Identity", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs and the response with the caller's X-Request-ID, or a fresh one."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        from timekeeper.service.runtime import get_runtime

        runtime = get_runtime()
        return {
            "status": "ok",
            "version": __version__,
            "store": type(runtime.store).__name__,
            "cache": "redis" if runtime.cache is not None else "disabled",
        }

    return app


app = create_app()
