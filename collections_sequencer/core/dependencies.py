"""
Dependency injection for FastAPI application.

Provides factory functions for creating service instances with proper
dependency injection and configuration.
"""

from functools import lru_cache
from typing import Optional

from collections_sequencer.core.config import get_settings
from collections_sequencer.database.sequence_repository import InMemorySequenceRepository, SequenceRepository
from collections_sequencer.services.messaging import HttpMessagingClient, MessagingClient
from collections_sequencer.services.policy_provider import PolicyProvider, StaticPolicyProvider
from collections_sequencer.services.sequence_controller import SequenceController


@lru_cache()
def get_sequence_repository() -> SequenceRepository:
    """Get the process-wide sequence store."""
    return InMemorySequenceRepository()


@lru_cache()
def get_policy_provider() -> PolicyProvider:
    """Get the collections policy provider built from settings."""
    return StaticPolicyProvider.from_settings(get_settings())


@lru_cache()
def get_messaging_client() -> Optional[MessagingClient]:
    """Get the messaging collaborator client, if one is configured."""
    settings = get_settings()
    if not settings.messaging_service_url:
        return None
    return HttpMessagingClient.from_settings(settings)


@lru_cache()
def get_sequence_controller() -> SequenceController:
    """Get sequence controller instance."""
    settings = get_settings()
    return SequenceController(
        repository=get_sequence_repository(),
        messaging=get_messaging_client(),
        policy_provider=get_policy_provider(),
        tick_concurrency=settings.tick_concurrency,
    )
