"""
KCS Pipeline API

Partner order intake, order status and metrics for the book pipeline.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text

from kcs.api.v1.router import api_router
from kcs.core.config import settings
from kcs.core.exceptions import IntakeError
from kcs.core.logging_config import configure_logging
from kcs.core.metrics import render_latest
from kcs.db.base import engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    configure_logging()
    logger.info("Starting up KCS pipeline API...")
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("Database connection established")
    except Exception as e:
        # Don't fail startup, the health endpoint reports status
        logger.error(f"Database connection failed: {e}")
    yield
    logger.info("Shutting down KCS pipeline API...")


# Create FastAPI instance
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False,
)


@app.exception_handler(IntakeError)
async def intake_error_handler(request: Request, exc: IntakeError):
    logger.info(f"Intake rejected with {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Anything else becomes a plain 500 without internals
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions."""
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"code": "internal_error"})


# Include API router
app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "kcs-pipeline",
        "version": settings.VERSION,
    }


@app.get("/metrics")
async def metrics():
    """Prometheus exposition."""
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)
