"""
Appointment Bot API

FastAPI application entry point: inbound webhook, conversation admin,
health probes, plus the session sweeper and the daily reminder job.
"""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from appointment_bot.api.routes import conversations, health, webhook
from appointment_bot.config import settings
from appointment_bot.core.conversation import drain_state_machine, get_conversation_store
from appointment_bot.core.reminders import create_reminder_scheduler
from appointment_bot.infra.database import close_db, init_db
from appointment_bot.infra.messaging import get_messaging_gateway
from appointment_bot.infra.redis import RedisClient


def setup_logging() -> None:
    """Configure logging based on environment."""
    log_level = logging.DEBUG if settings.debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


logger = logging.getLogger(__name__)


def start_reminder_scheduler() -> Optional[AsyncIOScheduler]:
    """
    Arm the daily reminder job inside the API process.

    One-shot mode (REMINDER_RUN_NOW) never arms the schedule; one-shot
    runs belong to the worker, which sends once and exits.

    Returns:
        The started scheduler, or None when nothing was armed
    """
    if not settings.reminders_enabled:
        return None
    if settings.reminder_run_now:
        logger.warning("REMINDER_RUN_NOW set - daily reminder schedule not armed")
        return None

    scheduler = create_reminder_scheduler()
    scheduler.start()
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Starts the session sweeper and (when enabled) the reminder
    scheduler; stops both on shutdown.
    """
    # === STARTUP ===
    setup_logging()
    logger.info(f"Starting {settings.app_name} in {settings.app_env} mode ({settings.timezone})")

    health.set_start_time()

    # Ledger tables (only in development - use migrations in production)
    if settings.is_development and settings.database_url:
        try:
            await init_db()
            logger.info("Database tables initialized")
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Database init skipped: {e}")

    redis = await RedisClient.get_client()
    if redis:
        logger.info("Redis connection established")
    else:
        logger.warning("Redis unavailable - conversations kept in memory")

    store = get_conversation_store()
    sweeper = asyncio.create_task(store.run_sweeper(), name="session-sweeper")

    scheduler = start_reminder_scheduler()

    logger.info(f"Application ready at http://{settings.host}:{settings.port}")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")

    if scheduler is not None:
        scheduler.shutdown(wait=False)

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper

    await drain_state_machine()
    await get_messaging_gateway().close()

    await RedisClient.close()
    await close_db()

    logger.info("Shutdown complete")


app = FastAPI(
    title="Appointment Bot API",
    description="""
    WhatsApp appointment scheduling assistant.

    ## Features
    - Slot offers grounded in real calendar availability
    - Per-patient conversation state with TTL
    - Daily, idempotent appointment reminders
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    detail = str(exc) if settings.is_development else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": detail,
        },
    )


@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Log request duration in debug mode."""
    start_time = time.time()
    response = await call_next(request)
    if settings.debug:
        duration = time.time() - start_time
        logger.debug(f"{request.method} {request.url.path} completed in {duration:.3f}s")
    return response


app.include_router(health.router)
app.include_router(webhook.router)
app.include_router(conversations.router)


@app.get("/", tags=["Root"])
async def root() -> dict:
    """Basic API information."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "status": "running",
        "environment": settings.app_env,
        "docs": "/docs" if settings.is_development else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "appointment_bot.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
