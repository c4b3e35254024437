"""
Circuit breaker and HTTP client for collaborator services.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from collections_sequencer.core.exceptions import (
    ExternalServiceError,
    ExternalServiceTimeoutError,
    ServiceUnavailableError,
)

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: int = 60
    half_open_max_calls: int = 3


class CircuitBreaker:
    """Circuit breaker for collaborator calls."""

    def __init__(
        self,
        service_name: str = "Unknown Service",
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time: Optional[float] = None

    async def call_async(self, func: Callable, *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection."""
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self._transition_to_half_open()
            else:
                logger.warning(
                    "Circuit breaker rejecting call - OPEN state",
                    service=self.service_name,
                    failure_count=self.failure_count,
                )
                raise ServiceUnavailableError(
                    self.service_name,
                    f"Circuit breaker is OPEN for {self.service_name}",
                )

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.config.half_open_max_calls:
                raise ServiceUnavailableError(
                    self.service_name,
                    f"Circuit breaker half-open limit reached for {self.service_name}",
                )
            self.half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        return (
            self.last_failure_time is not None
            and self._clock() - self.last_failure_time >= self.config.timeout
        )

    def _transition_to_half_open(self) -> None:
        self.state = CircuitState.HALF_OPEN
        self.half_open_calls = 0
        self.success_count = 0
        logger.info("Circuit breaker transitioning to half-open", service=self.service_name)

    def _on_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.reset()
        else:
            self.failure_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            self.state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                service=self.service_name,
                failure_count=self.failure_count,
                threshold=self.config.failure_threshold,
            )

    def get_status(self) -> Dict[str, Any]:
        """Get current circuit breaker status."""
        return {
            "service": self.service_name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.config.failure_threshold,
            "is_available": self.state != CircuitState.OPEN,
            "last_failure_time": self.last_failure_time,
        }

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time = None


class ServiceClient:
    """
    HTTP service client with circuit breaker protection.

    Provides a wrapper around httpx for calling collaborator services.
    """

    def __init__(
        self,
        service_name: str,
        base_url: str,
        timeout_seconds: int = 30,
        circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize service client.

        Args:
            service_name: Name of the service for logging
            base_url: Base URL for the service
            timeout_seconds: Request timeout in seconds
            circuit_breaker_config: Optional circuit breaker configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.service_name = service_name
        self.base_url = base_url.rstrip('/')
        self.timeout_seconds = timeout_seconds
        self.circuit_breaker = CircuitBreaker(
            service_name=service_name,
            config=circuit_breaker_config,
        )
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def post(self, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make POST request with circuit breaker protection."""
        return await self._make_request("POST", endpoint, **kwargs)

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        """
        Make HTTP request with circuit breaker protection.

        Raises:
            ExternalServiceError: If the request fails or the circuit is open
        """
        async def protected_request():
            try:
                response = await self.client.request(method, f"/{endpoint.lstrip('/')}", **kwargs)
                response.raise_for_status()
            except httpx.TimeoutException as e:
                logger.error(
                    "Timeout in service call",
                    service_name=self.service_name,
                    method=method,
                    endpoint=endpoint,
                    error=str(e),
                )
                raise ExternalServiceTimeoutError(
                    service_name=self.service_name,
                    timeout_seconds=self.timeout_seconds,
                )
            except httpx.HTTPStatusError as e:
                logger.error(
                    "HTTP error in service call",
                    service_name=self.service_name,
                    method=method,
                    endpoint=endpoint,
                    status_code=e.response.status_code,
                )
                raise ExternalServiceError(
                    service_name=self.service_name,
                    message=f"HTTP {e.response.status_code}: {e.response.text}",
                    status_code=e.response.status_code,
                )
            except httpx.RequestError as e:
                logger.error(
                    "Request error in service call",
                    service_name=self.service_name,
                    method=method,
                    endpoint=endpoint,
                    error=str(e),
                )
                raise ExternalServiceError(
                    service_name=self.service_name,
                    message=f"Request failed: {str(e)}",
                )

            try:
                return response.json()
            except ValueError:
                return {"data": response.text, "status_code": response.status_code}

        try:
            return await self.circuit_breaker.call_async(protected_request)
        except ServiceUnavailableError as e:
            raise ExternalServiceError(
                service_name=self.service_name,
                message=f"Service unavailable: {e.detail}",
            )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    def get_circuit_status(self) -> Dict[str, Any]:
        """Get circuit breaker status."""
        return self.circuit_breaker.get_status()
