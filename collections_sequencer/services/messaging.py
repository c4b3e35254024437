"""
Messaging collaborator interface.

The sequencer never sends statements, SMS, email or calls itself. When a
step is reached it hands the step's action and channel to a messaging
collaborator and records the reported outcome. Timeouts and retries belong
to the collaborator client, not to the engine.
"""

import abc
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from collections_sequencer.core.circuit_breaker import CircuitBreakerConfig, ServiceClient
from collections_sequencer.core.config import Settings, get_settings
from collections_sequencer.core.exceptions import ExternalServiceError
from collections_sequencer.core.retry import create_async_retry_decorator, get_messaging_retry_config
from collections_sequencer.models.sequence import Sequence, StepRecord
from collections_sequencer.utils.step_catalog import step_at

logger = structlog.get_logger(__name__)


@dataclass
class DeliveryResult:
    """Outcome reported by the messaging collaborator."""
    success: bool
    response: str


class MessagingClient(abc.ABC):
    """Dispatches a reached step to the outside world."""

    @abc.abstractmethod
    async def send_step(self, sequence: Sequence, step: StepRecord) -> DeliveryResult:
        """
        Perform the step's action.

        Raises:
            ExternalServiceError: If the collaborator could not be reached
        """


def build_dispatch_payload(sequence: Sequence, step: StepRecord) -> Dict[str, Any]:
    """Request body describing a step for the messaging service."""
    definition = step_at(step.day_offset)
    return {
        "sequence_id": sequence.sequence_id,
        "account_id": sequence.account_id,
        "day_offset": step.day_offset,
        "channel": definition.channel.value,
        "action": step.action,
        "balance": str(sequence.total_balance),
        "manual": step.manual,
    }


class HttpMessagingClient(MessagingClient):
    """Messaging collaborator reached over HTTP with retries and a circuit breaker."""

    def __init__(self, service_client: ServiceClient, max_attempts: int = 3):
        self.service_client = service_client
        self._retry = create_async_retry_decorator(
            get_messaging_retry_config(max_attempts),
            service_name=service_client.service_name,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HttpMessagingClient":
        settings = settings or get_settings()
        service_client = ServiceClient(
            service_name="messaging_service",
            base_url=settings.messaging_service_url,
            timeout_seconds=settings.messaging_timeout_seconds,
            circuit_breaker_config=CircuitBreakerConfig(
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout_seconds,
            ),
        )
        return cls(service_client, max_attempts=settings.messaging_max_retries)

    async def send_step(self, sequence: Sequence, step: StepRecord) -> DeliveryResult:
        payload = build_dispatch_payload(sequence, step)

        @self._retry
        async def dispatch() -> Dict[str, Any]:
            return await self.service_client.post("/steps/dispatch", json=payload)

        data = await dispatch()
        if not isinstance(data, dict) or "success" not in data:
            raise ExternalServiceError(
                service_name=self.service_client.service_name,
                message="Malformed dispatch response",
            )

        result = DeliveryResult(
            success=bool(data["success"]),
            response=str(data.get("response") or ("Delivered" if data["success"] else "Delivery failed")),
        )

        logger.info(
            "Step dispatched to messaging service",
            sequence_id=sequence.sequence_id,
            day_offset=step.day_offset,
            channel=payload["channel"],
            success=result.success,
        )

        return result

    async def close(self) -> None:
        await self.service_client.close()
