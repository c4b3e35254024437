"""Main FastAPI application for the Collections Escalation Sequencer."""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from collections_sequencer.api.health import router as health_router
from collections_sequencer.api.sequences import router as sequences_router
from collections_sequencer.core.config import get_settings
from collections_sequencer.core.dependencies import get_messaging_client, get_sequence_repository
from collections_sequencer.core.exceptions import BaseAPIException, SequencerError, map_sequencer_error
from collections_sequencer.core.logging import get_correlation_id, get_logger, setup_logging
from collections_sequencer.core.middleware import CorrelationIDMiddleware

settings = get_settings()

# Initialize logging
setup_logging(settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown hooks."""
    app.state.start_time = time.time()
    logger.info("Starting Collections Escalation Sequencer", version=settings.service_version)

    repository_healthy = await get_sequence_repository().health_check()
    if not repository_healthy:
        logger.warning("Sequence repository health check failed on startup")

    logger.info(
        "Service startup complete",
        repository_healthy=repository_healthy,
        messaging_configured=settings.messaging_service_url is not None,
        auto_escalation=settings.auto_escalation,
    )

    yield

    logger.info("Shutting down Collections Escalation Sequencer")
    messaging = get_messaging_client()
    if messaging is not None:
        await messaging.close()


app = FastAPI(
    title="Collections Escalation Sequencer",
    description="Time-driven escalation of overdue patient balances for dental practices",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)
app.state.start_time = time.time()

app.add_middleware(CorrelationIDMiddleware)

# CORS middleware
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Include API routers
app.include_router(sequences_router, prefix="/api/v1")
app.include_router(health_router, prefix="/api/v1", tags=["health"])


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException):
    """Render API errors with a stable body shape."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@app.exception_handler(SequencerError)
async def sequencer_exception_handler(request: Request, exc: SequencerError):
    """Render core errors that were not translated by a router."""
    api_error = map_sequencer_error(exc, get_correlation_id())
    return JSONResponse(status_code=api_error.status_code, content=api_error.to_dict())


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": settings.service_name,
        "version": settings.service_version,
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "collections_sequencer.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
