from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import router
from authgate.logging import get_logger, set_correlation_id
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors fail fast."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", app_name=runtime.settings.app_name, version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except (StoreUnavailable, OSError) as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthGate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id comes from the client's X-Request-ID header when present,
    otherwise a new UUID, and is echoed back in X-Request-ID.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report shared cache connectivity and build info."""
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        cache_ok = await asyncio.wait_for(
            runtime.cache.ping(), timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache")
        cache_ok = False
    except StoreUnavailable as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    payload = {
        "status": "healthy" if cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if cache_ok else 503, content=payload)


def create_app() -> FastAPI:
    return app
