from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from blockgate.api.error_handling import register_exception_handlers
from blockgate.api.routes import router
from blockgate.config import Settings
from blockgate.logging import bind_request_id, get_logger
from blockgate.service.background import drain_detached

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; flush detached work and close clients on shutdown."""
    from blockgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("gateway_started", version=__version__, service_name=runtime.settings.service_name)

    yield

    try:
        await drain_detached()
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    return settings.cors_allow_origins


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Block Execution Gateway", version=__version__, lifespan=lifespan)

    origins = _allowed_origins(settings)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=[
                "Content-Type",
                "X-Service-Key",
                "X-Canvas-User-Id",
                "X-Canvas-Workspace-Id",
                "X-Request-ID",
                "X-Idempotency-Key",
            ],
            expose_headers=["X-Request-ID", "Retry-After"],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_request_id(request, call_next):
        """Tag every log line of the request with X-Request-ID, generating one if absent."""
        request_id = bind_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Dependency checks for the store and, when configured, Redis."""
        from blockgate.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, probe) -> bool:
            try:
                await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error(f"health_check_{label}_failed", error=str(exc))
            return False

        if hasattr(runtime.store, "verify_connection"):
            db_ok = await _run_bounded(
                "database", lambda: asyncio.to_thread(runtime.store.verify_connection)
            )
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        redis_ok = True
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.ping)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if db_ok and redis_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
