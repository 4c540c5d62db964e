"""
FILE: tests/conftest.py
Shared fixtures for proposal lifecycle tests.
"""

from pathlib import Path

import pytest

from src.infrastructure.proposals import InMemoryProposalRepository
from tests.factories import service_with_customer


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if (
            _has_marker(item, "unit")
            or _has_marker(item, "integration")
            or _has_marker(item, "e2e")
        ):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        if "/tests/e2e/" in path:
            item.add_marker(pytest.mark.e2e)
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture
def repository():
    return InMemoryProposalRepository()


@pytest.fixture
def lifecycle(repository):
    """Service, repository and one active customer sharing the same store."""
    return service_with_customer(repository)


@pytest.fixture(autouse=True)
def in_memory_store_backend(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY")
    monkeypatch.delenv("PROPOSAL_POSTGRES_DSN", raising=False)
    monkeypatch.delenv("PROPOSAL_DEFAULT_PAGE_SIZE", raising=False)
