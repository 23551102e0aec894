"""
Calendar Assistant API

Builds the FastAPI application: logging, service lifecycle, error mapping
and the chat and health routers.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from calendar_assistant.api.routes import chat, health
from calendar_assistant.config import settings
from calendar_assistant.core.calendar import ProviderError, get_refresh_manager
from calendar_assistant.infra.database import close_db, init_db
from calendar_assistant.infra.redis import RedisClient

logger = logging.getLogger(__name__)

# Loggers that drown out turn-level logs at INFO
NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "anthropic")


def setup_logging() -> None:
    """Configure root logging once per process."""
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )


# ============================================
# LIFECYCLE
# ============================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect backing services on startup and release them on shutdown."""
    setup_logging()
    logger.info(f"Starting {settings.app_name} ({settings.app_env})")
    health.set_start_time()

    if settings.is_development:
        try:
            await init_db()
            logger.info("Credential table ready")
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Credential table not created: {e}")

    # Warm the connection; None means conversations stay in process
    if await RedisClient.get_client() is None:
        logger.warning("Conversation state kept in memory until Redis is reachable")

    yield

    logger.info("Shutting down")
    await get_refresh_manager().close()
    await RedisClient.close()
    await close_db()
    logger.info("Shutdown complete")


# ============================================
# ERROR MAPPING
# ============================================


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"Rejected {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "code": "invalid_request",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    """Provider failures that escape the engine surface as a bad gateway."""
    logger.error(f"{exc.provider.value} failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "success": False,
            "code": "provider_unavailable",
            "message": f"{exc.provider.value} calendar could not be reached.",
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "code": "error",
            "detail": str(exc) if settings.is_development else "Internal server error",
        },
    )


# ============================================
# APPLICATION
# ============================================


def create_app() -> FastAPI:
    """Build the API application."""
    docs = settings.is_development

    application = FastAPI(
        title="Calendar Assistant API",
        description=(
            "Conversational meeting scheduler for Google Calendar and "
            "Microsoft Outlook. Requests arrive through the account gateway, "
            "which sets `X-User-ID`."
        ),
        version=health.VERSION,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-User-ID", "X-Request-ID"],
    )

    @application.middleware("http")
    async def tag_request(request: Request, call_next):
        """Echo a request id and log turn latency per user."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        started = time.perf_counter()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        elapsed_ms = (time.perf_counter() - started) * 1000
        if request.url.path.startswith("/api/"):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} "
                f"user={request.headers.get('X-User-ID', '-')} "
                f"status={response.status_code} {elapsed_ms:.0f}ms"
            )
        return response

    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.add_exception_handler(ProviderError, provider_error_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)

    application.include_router(health.router)
    application.include_router(chat.router, prefix="/api")

    @application.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "name": settings.app_name,
            "version": health.VERSION,
            "environment": settings.app_env,
            "providers": settings.provider_order_list,
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calendar_assistant.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level="debug" if settings.debug else "info",
    )
