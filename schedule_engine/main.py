"""FastAPI main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from schedule_engine.core.config import settings
from schedule_engine.core.middleware import setup_middleware
from schedule_engine.core.exceptions import (
    SchedulerError, ValidationError, ResourceNotFoundError, RecurrenceError,
)

from schedule_engine.api.schedules import router as schedules_router

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("schedule_engine")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("🚀 Starting Schedule Engine API")

    from schedule_engine.services.arming import install_arming_hook
    install_arming_hook()
    logger.info("✅ Immediate arming hook installed")

    # Redis check
    try:
        from schedule_engine.services.queue import schedule_queue
        if schedule_queue.health_check():
            logger.info("✅ Redis connected")
        else:
            logger.warning("⚠️  Redis not available")
    except Exception:
        logger.warning("⚠️  Redis not available")

    yield

    from schedule_engine.db.session import database_manager
    database_manager.dispose()
    logger.info("🔻 Shutting down Schedule Engine API")


app = FastAPI(
    title="Schedule Engine API",
    description="Multi-tenant recurring schedule engine",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Middleware
setup_middleware(app)


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(ResourceNotFoundError)
async def not_found_exception_handler(request: Request, exc: ResourceNotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(SchedulerError)
async def scheduler_exception_handler(request: Request, exc: SchedulerError):
    if isinstance(exc, RecurrenceError):
        logger.error("Recurrence error on %s: %s (%s)", request.url.path, exc.message, exc.expression)
    else:
        logger.error("Scheduler error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=500, content={"detail": "Internal scheduling error"})


# Register routers
app.include_router(schedules_router, prefix="/api")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/api/health")
async def health():
    """Quick health check endpoint."""
    return {"status": "ok"}
