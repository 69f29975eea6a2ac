"""FastAPI application entry point for the Stazama API."""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from stazama.app.config import get_settings
from stazama.infra.database import init_db
from stazama.services.cache_service import cache_service
from stazama.services.monitoring import install_global_handlers, monitoring
from stazama.services.rate_limiter import limiter, rate_limit_exceeded_handler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: database, cache sweep and monitoring flush."""
    started_at = time.perf_counter()
    await init_db()

    cache_service.start()
    monitoring.start()
    install_global_handlers(monitoring)
    monitoring.record_startup_metrics(started_at)
    logger.info("Stazama API started")

    yield

    cache_service.destroy()
    await monitoring.destroy()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Stazama API",
    lifespan=lifespan,
    debug=settings.debug,
)

# Rate limiting (login and order tracking)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS: every origin is allowed in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_request_duration(request: Request, call_next):
    """Time every served request into ``api_request_duration``."""
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        monitoring.record_metric(
            "api_request_duration",
            (time.perf_counter() - start) * 1000,
            {"url": request.url.path, "method": request.method, "success": "false"},
        )
        monitoring.capture_error(e, {"type": "api_error", "url": request.url.path})
        raise
    monitoring.record_metric(
        "api_request_duration",
        (time.perf_counter() - start) * 1000,
        {
            "url": request.url.path,
            "method": request.method,
            "status": str(response.status_code),
            "success": str(response.status_code < 400).lower(),
        },
    )
    return response


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from stazama.app.routes.auth import router as auth_router
from stazama.app.routes.requests import router as requests_router
from stazama.app.routes.rpc import router as rpc_router
from stazama.app.routes.directory import router as directory_router
from stazama.app.routes.realtime import router as realtime_router
from stazama.app.routes.telemetry import router as telemetry_router
from stazama.app.routes.admin_system import router as admin_system_router

app.include_router(auth_router)
app.include_router(requests_router)
app.include_router(rpc_router)
app.include_router(directory_router)
app.include_router(realtime_router)
app.include_router(telemetry_router)
app.include_router(admin_system_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "stazama"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "stazama.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
