"""
FastAPI application main module.
Wires the job runtime (semaphore, cron lock, usage counters, metrics) at startup
and exposes the cron, operator queue and metrics endpoints.
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
import os
from contextlib import asynccontextmanager
from sqlalchemy import text
from revenue_kernel.api.v1 import api_router
from revenue_kernel.utils import setup_logging, get_logger
from revenue_kernel.jobs.scheduler import PeriodicScheduler, default_tasks
from revenue_kernel.jobs.tasks import build_task_context
from revenue_kernel.database import engine, Base, SessionLocal
from revenue_kernel.config import REDIS_SETTINGS, SCHEDULER_SETTINGS

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/app.log"),
    enable_console=True
)

logger = get_logger(__name__)

VERSION = "0.1.0"


def check_redis_health() -> bool:
    """Check if Redis is reachable for semaphores, cron locks and usage counters."""
    try:
        import redis
        client = redis.from_url(str(REDIS_SETTINGS["url"]), socket_connect_timeout=2.0)
        client.ping()
        return True
    except Exception as e:
        logger.warning("Redis health check: Redis is unavailable", error=str(e))
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    logger.info("Application startup initiated")
    scheduler: PeriodicScheduler | None = None
    try:
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)

        if REDIS_SETTINGS.get("use_redis") and not check_redis_health():
            logger.warning("Redis is enabled but unreachable; semaphores and cron locks will refuse until it recovers")

        ctx = build_task_context()
        # exposed on app.state so endpoints resolve collaborators without importing main
        app.state.task_context = ctx  # type: ignore[attr-defined]

        if SCHEDULER_SETTINGS.get("enabled"):
            scheduler = PeriodicScheduler(default_tasks(ctx))
            scheduler.start()
        else:
            logger.info("In-process scheduler disabled; expecting external cron")
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if scheduler is not None:
            scheduler.stop()
        logger.info("Application shutdown completed")


app = FastAPI(
    title="Revenue Kernel",
    description="""
    Offline conversion upload queue and usage reconciliation.

    ## Cron
    `POST /api/v1/cron/*` with `Authorization: Bearer <CRON_SECRET>`.

    ## Operators
    `/api/v1/queue/*` and `/api/v1/metrics` with `Authorization: Bearer <OPERATOR_TOKEN>`.
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)


# Request ID and logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
            "request_id": request_id
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Health check with database status and, when enabled, Redis status."""
    health = {
        "status": "healthy",
        "service": "revenue-kernel",
        "version": VERSION,
        "timestamp": time.time(),
        "checks": {},
    }
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health["checks"]["database"] = "healthy"
    except Exception as e:
        health["checks"]["database"] = f"unhealthy: {e}"
        health["status"] = "degraded"

    if REDIS_SETTINGS.get("use_redis"):
        healthy = check_redis_health()
        health["checks"]["redis"] = "healthy" if healthy else "unavailable"
        if not healthy:
            health["status"] = "degraded"
    return health


app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")
    uvicorn.run(
        "revenue_kernel.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["revenue_kernel"],
        log_level="info",
        access_log=True
    )
