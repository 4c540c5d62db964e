import os
from dataclasses import dataclass
from typing import Optional, Union

from src.core.customers.service import CustomerRegistryService
from src.core.proposals.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from src.core.proposals.service import ProposalWorkflowService
from src.infrastructure.observability import configure_logging
from src.infrastructure.proposals.in_memory import InMemoryProposalRepository
from src.infrastructure.proposals.postgres import PostgresProposalRepository

LifecycleRepository = Union[InMemoryProposalRepository, PostgresProposalRepository]


def proposal_store_backend_name() -> str:
    backend = os.getenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    return "IN_MEMORY"


def proposal_postgres_dsn() -> str:
    return os.getenv("PROPOSAL_POSTGRES_DSN", "").strip()


def proposal_default_page_size() -> int:
    raw = os.getenv("PROPOSAL_DEFAULT_PAGE_SIZE", "").strip()
    if not raw:
        return DEFAULT_PAGE_SIZE
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError("PROPOSAL_DEFAULT_PAGE_SIZE_INVALID") from exc
    return min(max(1, value), MAX_PAGE_SIZE)


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    import psycopg

    return (ConnectionError, OSError, TimeoutError, ValueError, psycopg.Error)


def build_repository() -> LifecycleRepository:
    if proposal_store_backend_name() == "POSTGRES":
        dsn = proposal_postgres_dsn()
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresProposalRepository(dsn=dsn)
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("PROPOSAL_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryProposalRepository()


def build_proposal_service(
    repository: Optional[LifecycleRepository] = None,
) -> ProposalWorkflowService:
    return ProposalWorkflowService(
        repository=repository or build_repository(),
        default_page_size=proposal_default_page_size(),
    )


def build_customer_registry_service(
    repository: Optional[LifecycleRepository] = None,
) -> CustomerRegistryService:
    return CustomerRegistryService(repository=repository or build_repository())


@dataclass(frozen=True)
class ProposalRuntime:
    repository: LifecycleRepository
    proposals: ProposalWorkflowService
    customers: CustomerRegistryService


def build_runtime(log_level: Optional[str] = None) -> ProposalRuntime:
    """Process entry point: JSON logging on the root logger, one shared store for both services."""
    configure_logging(log_level)
    repository = build_repository()
    return ProposalRuntime(
        repository=repository,
        proposals=build_proposal_service(repository),
        customers=build_customer_registry_service(repository),
    )
