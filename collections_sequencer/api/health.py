"""
Health check endpoints for the Collections Escalation Sequencer.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from collections_sequencer.core.config import get_settings
from collections_sequencer.core.dependencies import get_messaging_client, get_sequence_repository
from collections_sequencer.core.logging import get_logger
from collections_sequencer.database.sequence_repository import SequenceRepository
from collections_sequencer.services.messaging import HttpMessagingClient, MessagingClient

router = APIRouter()
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    uptime_seconds: float
    timestamp: datetime
    service_name: str


class DependenciesHealthResponse(BaseModel):
    """Dependencies health check response model."""

    repository: bool
    messaging_configured: bool
    messaging_circuit: Optional[Dict[str, Any]] = None
    overall_status: str


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """
    Basic health check endpoint.

    Returns service status, version, and uptime.
    """
    settings = get_settings()
    start_time = getattr(request.app.state, "start_time", time.time())

    response = HealthResponse(
        status="healthy",
        version=settings.service_version,
        uptime_seconds=time.time() - start_time,
        timestamp=datetime.now(timezone.utc),
        service_name=settings.service_name,
    )

    logger.debug("Health check completed", uptime_seconds=response.uptime_seconds)

    return response


@router.get("/health/dependencies", response_model=DependenciesHealthResponse)
async def dependencies_health_check(
    repository: SequenceRepository = Depends(get_sequence_repository),
    messaging: Optional[MessagingClient] = Depends(get_messaging_client),
):
    """
    Health of the sequence store and the messaging collaborator.

    An open messaging circuit degrades the service; the sequencer keeps
    advancing sequences and records failed dispatches as skipped.
    """
    try:
        repository_healthy = await repository.health_check()
    except Exception as e:
        logger.warning("Sequence repository health check failed", error=str(e))
        repository_healthy = False

    circuit = None
    if isinstance(messaging, HttpMessagingClient):
        circuit = messaging.service_client.get_circuit_status()

    if not repository_healthy:
        overall_status = "unhealthy"
    elif circuit is not None and not circuit["is_available"]:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    logger.info(
        "Dependencies health check completed",
        repository=repository_healthy,
        messaging_configured=messaging is not None,
        overall_status=overall_status,
    )

    return DependenciesHealthResponse(
        repository=repository_healthy,
        messaging_configured=messaging is not None,
        messaging_circuit=circuit,
        overall_status=overall_status,
    )
