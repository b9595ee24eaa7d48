from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from lankaqr.api.error_handling import register_exception_handlers
from lankaqr.api.pages import router as pages_router
from lankaqr.api.routes import router
from lankaqr.config import Settings
from lankaqr.logging import get_logger, set_correlation_id
from lankaqr.service.access import NO_STORE_HEADERS, check_access
from lankaqr.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain background cleanup on shutdown."""
    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        await get_runtime().shutdown()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="LankaQR Portal", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def access_gate(request: Request, call_next):
    """Redirect cookie-less requests for protected pages to sign-in."""
    decision = check_access(request.url.path, request.cookies)
    if not decision.allowed:
        return RedirectResponse(decision.redirect_to, status_code=307)
    response = await call_next(request)
    if decision.no_store:
        for header, value in NO_STORE_HEADERS.items():
            response.headers[header] = value
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs and the response with the request's X-Request-ID (or a new one)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)


@app.get("/healthz", tags=["health"])
async def healthz():
    """Liveness plus a bounded document-store probe; 503 when the store is down."""
    store_ok = False
    try:
        await asyncio.wait_for(
            get_runtime().store.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))

    body = {
        "ok": store_ok,
        "checks": {"store": "healthy" if store_ok else "unhealthy"},
        "version": __version__,
        "build": __build__,
    }
    return JSONResponse(body, status_code=200 if store_ok else 503)


app.include_router(router)
# Catch-all tenant page routes go last
app.include_router(pages_router)
