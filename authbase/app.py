from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authbase.api.error_handling import register_exception_handlers
from authbase.api.routes import router
from authbase.config import OnUnavailable, Settings
from authbase.logging import get_logger, set_correlation_id
from authbase.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        runtime = get_runtime()
        await runtime.sweeper.start()
    except Exception as exc:
        logger.error("startup_sweeper_failed", error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authbase", version=__version__, lifespan=lifespan)
register_exception_handlers(app, surface_account_lock=_settings.surface_account_lock)
app.include_router(router)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the log context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    if request.url.path.startswith("/v1/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report credential store and revocation store reachability.

    A down revocation store degrades rather than fails the check when the
    revocation policy is fail-open.
    """
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    try:
        runtime.store.get_principal("00000000-0000-0000-0000-000000000000")
        checks["credential_store"] = {"status": "ok"}
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["credential_store"] = {"status": "error"}
        healthy = False

    revocation_ok = await runtime.revocation.is_available()
    if revocation_ok:
        checks["revocation_store"] = {"status": "ok"}
    else:
        checks["revocation_store"] = {
            "status": "degraded",
            "policy": runtime.revocation.config.on_unavailable.value,
        }
        if runtime.revocation.config.on_unavailable == OnUnavailable.FAIL_CLOSED:
            healthy = False

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
