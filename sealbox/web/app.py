"""
FastAPI Application

Application factory for the Sealbox mapping and preview service.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..sealing.exceptions import (
    ConditionNotSatisfied,
    ConfigurationError,
    DecryptionError,
    IntegrityError,
    NotFound,
    SealingError,
    TransientError,
    ValidationError,
)
from ..sealing.pipeline import SealedMessagePipeline

logger = logging.getLogger(__name__)


# Most specific first; the first matching class wins
_ERROR_STATUS = (
    (ValidationError, 400),
    (DecryptionError, 403),
    (NotFound, 404),
    (ConditionNotSatisfied, 423),
    (IntegrityError, 502),
    (TransientError, 503),
    (ConfigurationError, 500),
)


def status_for_error(error: SealingError) -> int:
    for error_type, status in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def create_app(pipeline: SealedMessagePipeline) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        pipeline: Pipeline whose index, content store and gate back the routes

    Returns:
        FastAPI application instance
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting Sealbox service...")
        yield
        logger.info("Shutting down Sealbox service...")

    app = FastAPI(
        title="Sealbox",
        description="Mapping and preview service for escrow-gated sealed messages",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    @app.exception_handler(SealingError)
    async def sealing_error_handler(request: Request, exc: SealingError):
        status = status_for_error(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        # Decryption failures get one message whatever the cause
        detail = "Message could not be opened" if isinstance(exc, DecryptionError) else str(exc)
        return JSONResponse(status_code=status, content={"detail": detail})

    # Include routers
    from .routes import conditions, mappings, messages

    app.include_router(mappings.router, prefix="/api/mappings", tags=["Mappings"])
    app.include_router(messages.router, prefix="/api/messages", tags=["Messages"])
    app.include_router(conditions.router, prefix="/api/conditions", tags=["Conditions"])

    # Health check
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "components": {
                "index": "up",
                "records": len(pipeline.index),
            },
        }

    return app
