"""Attachment service FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from src.core.attachments.router import router as attachments_router
from src.core.attachments.service import DetachedReleaser
from src.core.attachments.sweeper import ExpirationSweeper
from src.core.config import settings
from src.core.database.session import async_session
from src.core.exceptions import AppException
from src.core.exceptions.handlers import (
    app_exception_handler,
    http_exception_handler,
    sqlalchemy_db_error_handler,
    validation_exception_handler,
)
from src.core.storage import get_blob_gateway

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    blob_gateway = get_blob_gateway()
    app.state.releaser = DetachedReleaser(async_session, blob_gateway)
    app.state.sweeper = None

    # Startup
    if settings.attachment_sweep_enabled:
        app.state.sweeper = ExpirationSweeper(async_session, blob_gateway)
        app.state.sweeper.start()
    else:
        logger.info("Attachment expiration sweeper disabled")

    yield

    # Shutdown
    if app.state.sweeper is not None:
        await app.state.sweeper.stop()
    await app.state.releaser.drain()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Attachment Service",
        description="Upload registration, confirmation and expiry of file attachments",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_db_error_handler)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Routers
    app.include_router(attachments_router, prefix="/api/v1")

    return app


app = create_app()
