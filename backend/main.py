"""
FastAPI application entry point for the Invow backend.

Authentication is handled upstream: the auth layer places the caller's
user id on request.state.user_id before these routes run.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from invow.api.routes import entitlements
from invow.api.routes import invoices
from invow.config.entitlements import get_entitlement_settings
from invow.database.session import init_db, reset_engine
from invow.entitlements.cache import EffectiveTierCache
from invow.entitlements.errors import EntitlementError

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_tier_cache(settings) -> Optional[EffectiveTierCache]:
    """
    Effective tier cache for this process, or None when it cannot stay coherent.

    Invalidation is process-local, so with more than one worker process a
    tier change in one worker would leave the others serving the old tier.
    Caching is only enabled for a single worker (WEB_CONCURRENCY unset or 1).
    """
    workers = int(os.getenv("WEB_CONCURRENCY", "1"))
    if workers > 1:
        logger.warning(
            "Effective tier cache disabled: tier invalidation is per-process",
            extra={"workers": workers},
        )
        return None
    return EffectiveTierCache.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Invow API")

    settings = get_entitlement_settings()

    # The app owns the effective tier cache; each request's service borrows it
    app.state.tier_cache = build_tier_cache(settings)
    logger.info(
        "Entitlement settings loaded",
        extra={
            "cache_ttl_seconds": settings.cache_ttl_seconds,
            "cache_max_size": settings.cache_max_size,
            "max_retries": settings.max_retries,
        },
    )

    # Database connectivity check; surface misconfigurations in deploy logs
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. All data endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else database_url.split("://")[0]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

        if os.getenv("AUTO_CREATE_TABLES", "").lower() in ("1", "true", "yes"):
            init_db()

    yield

    # Shutdown
    if app.state.tier_cache is not None:
        app.state.tier_cache.invalidate_all(reason="shutdown")
    reset_engine()
    logger.info("Shutting down Invow API")


# Create FastAPI app
app = FastAPI(
    title="Invow API",
    description="Invoice quota and subscription entitlement service",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware (configure for your frontend domain)
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", include_in_schema=False)
async def health():
    """Liveness probe (bypasses authentication)."""
    return {"status": "ok"}


# Include entitlement routes (requires authentication)
app.include_router(entitlements.router)

# Include invoice routes (requires authentication; report requires premium)
app.include_router(invoices.router)


@app.exception_handler(EntitlementError)
async def entitlement_exception_handler(request: Request, exc: EntitlementError):
    """Entitlement faults that escaped a route keep their status and payload."""
    logger.warning(
        "Entitlement error",
        extra={
            "user_id": getattr(request.state, "user_id", None),
            "error": exc.error_code,
            "path": request.url.path,
        },
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "user_id": getattr(request.state, "user_id", None),
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
