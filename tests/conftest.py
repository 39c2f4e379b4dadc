"""
Pytest configuration and shared fixtures.
"""

import pytest

from branching_chat.repositories.memory import InMemoryRepository
from branching_chat.services.files import FileStore
from branching_chat.services.orchestrator import TurnOrchestrator
from helpers import ScriptedGenerator


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def file_store() -> FileStore:
    return FileStore()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def orchestrator(repository, generator, file_store) -> TurnOrchestrator:
    return TurnOrchestrator(repository, generator, file_store, default_model="test-model")
