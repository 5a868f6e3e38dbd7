"""
FastAPI application factory.

Run with:
    uvicorn services.api.app:create_app --factory --host 0.0.0.0 --port 8000
"""

import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.ingestor.service import IngestionService, build_service
from services.api.routes import router
from utils.config import settings
from utils.errors import (
    BatchTooLargeError,
    CooldownActiveError,
    IngestionError,
    SubmissionThrottledError,
    ValidationFailure,
)
from utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def _error_response(exc: IngestionError) -> JSONResponse:
    if isinstance(exc, CooldownActiveError):
        return JSONResponse(
            {"detail": str(exc)},
            status_code=503,
            headers={"Retry-After": str(math.ceil(exc.remaining))},
        )
    if isinstance(exc, SubmissionThrottledError):
        return JSONResponse(
            {"detail": str(exc)},
            status_code=429,
            headers={"Retry-After": str(math.ceil(exc.wait))},
        )
    if isinstance(exc, BatchTooLargeError):
        return JSONResponse({"detail": str(exc)}, status_code=413)
    if isinstance(exc, ValidationFailure):
        return JSONResponse({"detail": str(exc)}, status_code=422)

    logger.error("Unhandled ingestion error", extra={"error": str(exc)})
    return JSONResponse({"detail": str(exc)}, status_code=500)


def create_app(service: Optional[IngestionService] = None) -> FastAPI:
    """Build the API. A service passed in is used as is and left open on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)
        owned = service is None
        app.state.service = service or build_service(settings)
        logger.info("API started", extra={"app": settings.APP_NAME, "version": settings.APP_VERSION})
        try:
            yield
        finally:
            if owned:
                await app.state.service.aclose()
            logger.info("API stopped")

    app = FastAPI(title="Ticket Ingestion API", version=settings.APP_VERSION, lifespan=lifespan)
    app.include_router(router, prefix="/api")

    @app.exception_handler(IngestionError)
    async def ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
        return _error_response(exc)

    @app.get("/health")
    async def health(request: Request) -> dict:
        current: IngestionService = request.app.state.service
        return {
            "status": "ok",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "cooldown_active": current.cooldown.is_active(),
        }

    return app
