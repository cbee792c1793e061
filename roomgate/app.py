from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roomgate.api.error_handling import register_exception_handlers
from roomgate.api.routes import router
from roomgate.config import Settings
from roomgate.logging import get_logger, set_correlation_id
from roomgate.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start scheduled presence reconciliation and release the store on shutdown."""
    from roomgate.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.presence_reconcile_enabled:
        await runtime.reconciler.start()

    yield

    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Roomgate", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Username", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID, generating one if absent."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    from roomgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"store": {"type": type(runtime.store).__name__}}
    try:
        await runtime.store.ping()
        checks["store"]["status"] = "ok"
    except StoreUnavailableError as exc:
        logger.error("health_check_store_failed", error=exc.message)
        checks["store"]["status"] = "unavailable"
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": __version__, "checks": checks},
        )
    checks["reconciler"] = {"running": runtime.reconciler.running}
    return {"status": "healthy", "version": __version__, "checks": checks}
