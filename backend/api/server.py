# api/server.py
# ============================================================================
# TISCO MARKET BACKEND v1.0 — FASTAPI SERVER
# ============================================================================
# Storefront (/api) and back-office (/api/admin) over one CommerceStore,
# with CORS, timing headers, domain error mapping and the payment monitor.
# ============================================================================

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import asyncpg
import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api import admin_routes, routes
from api.auth import TokenVerifier
from api.dependencies import Services, build_services
from api.rate_limit import RateLimiter
from database import Database
from errors import CommerceError, RateLimitedError
from storage.repository import PostgresCommerceStore


def configure_logging(level: int = logging.INFO):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


configure_logging()
logger = structlog.get_logger().bind(component="server")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

    # Run the stuck-session monitor inside the API process
    RUN_PAYMENT_MONITOR = os.getenv("PAYMENT_MONITOR_IN_PROCESS", "true").lower() == "true"


config = ServerConfig()

VERSION = "1.0.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    database: str
    rate_limit_backend: str


# =============================================================================
# ERROR HANDLERS
# =============================================================================

async def commerce_error_handler(request: Request, exc: CommerceError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        logger.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.reset_at),
        }
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ())[1:]), "message": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": errors})


async def database_error_handler(request: Request, exc: asyncpg.PostgresError):
    logger.error(
        "database_error",
        path=request.url.path,
        sqlstate=getattr(exc, "sqlstate", None),
        error=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Database error", "details": str(exc), "code": getattr(exc, "sqlstate", None)},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    services: Optional[Services] = None,
    token_verifier: Optional[TokenVerifier] = None,
    use_database: Optional[bool] = None,
    run_monitor: Optional[bool] = None,
) -> FastAPI:
    """
    Build the API.

    Args:
        services: pre-built service container (tests pass one over the
            in-memory store); built over Postgres when omitted
        token_verifier: bearer-token verifier; from environment when omitted
        use_database: open the asyncpg pool on start-up (default: when
            services were not supplied)
        run_monitor: start the payment monitor loop on start-up
    """
    use_database = services is None if use_database is None else use_database
    run_monitor = config.RUN_PAYMENT_MONITOR and services is None if run_monitor is None else run_monitor

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=VERSION, env=config.ENV)

        if use_database:
            await Database.initialize()

        if app.state.services is None:
            app.state.services = build_services(
                PostgresCommerceStore(),
                rate_limiter=RateLimiter(redis_url=config.REDIS_URL),
            )

        svc: Services = app.state.services
        await svc.rate_limiter.initialize()

        monitor_task = None
        if run_monitor:
            monitor_task = asyncio.create_task(svc.monitor.run_forever())

        yield

        logger.info("server_shutting_down")
        await svc.close()
        if monitor_task:
            monitor_task.cancel()
            try:
                await monitor_task
            except asyncio.CancelledError:
                pass
        if use_database:
            await Database.close()

    app = FastAPI(
        title="TISCO Market API",
        description="Storefront and back-office API with mobile-money payments",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.token_verifier = token_verifier or TokenVerifier()
    app.state.started_at = datetime.now(timezone.utc)
    app.state.use_database = use_database

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    app.add_exception_handler(CommerceError, commerce_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(asyncpg.PostgresError, database_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        database = "disabled"
        if request.app.state.use_database:
            try:
                await Database.fetch_one("SELECT 1")
                database = "connected"
            except Exception as e:
                logger.warning("health_database_error", error=str(e))
                database = "error"
        svc: Optional[Services] = request.app.state.services
        return HealthResponse(
            status="healthy" if database != "error" else "degraded",
            version=VERSION,
            uptime_seconds=uptime,
            database=database,
            rate_limit_backend=svc.rate_limiter.backend if svc else "memory",
        )

    app.include_router(routes.router)
    app.include_router(admin_routes.router)
    return app


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
