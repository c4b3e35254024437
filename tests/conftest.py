"""
Pytest configuration and fixtures for the Collections Escalation Sequencer.
"""
from datetime import datetime
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

from collections_sequencer.core.dependencies import get_sequence_controller
from collections_sequencer.database.sequence_repository import InMemorySequenceRepository
from collections_sequencer.main import app
from collections_sequencer.models.policy import CollectionsPolicy
from collections_sequencer.models.sequence import Sequence
from collections_sequencer.services.policy_provider import StaticPolicyProvider
from collections_sequencer.services.sequence_controller import SequenceController
from tests.factories import T0, day, make_sequence


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def at() -> Callable[[float], datetime]:
    """Factory for timestamps relative to the test epoch."""
    return day


@pytest.fixture
def policy() -> CollectionsPolicy:
    return CollectionsPolicy()


@pytest.fixture
def sequence() -> Sequence:
    return make_sequence()


@pytest.fixture
def repository() -> InMemorySequenceRepository:
    return InMemorySequenceRepository()


@pytest.fixture
def policy_provider() -> StaticPolicyProvider:
    return StaticPolicyProvider()


@pytest.fixture
def controller(repository, policy_provider) -> SequenceController:
    return SequenceController(repository, policy_provider=policy_provider)


@pytest.fixture
def client(controller) -> Generator[TestClient, None, None]:
    """
    Create a test client for the FastAPI application.

    The sequence controller is replaced with a fresh instance per test.
    """
    app.dependency_overrides[get_sequence_controller] = lambda: controller
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sample_headers() -> dict:
    """Sample request headers with correlation ID."""
    return {
        "X-Correlation-ID": "test-correlation-123",
        "Content-Type": "application/json",
    }
