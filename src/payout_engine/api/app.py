"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from payout_engine.api.routes import health_router, settlements_router
from payout_engine.database import dispose_db, init_db
from payout_engine.providers import TransferProviderNotConfiguredError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    init_db()
    yield
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Chef Payout Settlement API",
        description="Tiered, bonus-aware chef payouts with currency lock and idempotent release",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(TransferProviderNotConfiguredError)
    async def provider_not_configured_handler(
        request: Request, exc: TransferProviderNotConfiguredError
    ) -> JSONResponse:
        """No processor to send money through; nothing was changed."""
        logger.error("Refused %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc), "code": "PROVIDER_NOT_CONFIGURED"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    app.include_router(health_router)
    app.include_router(settlements_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
