from typing import Optional, Protocol

from src.core.customers.models import Customer
from src.core.proposals.models import (
    AuditRecord,
    IdempotentOperationRecord,
    OperationType,
    Proposal,
)
from src.core.proposals.query import ProposalCriteria


class AuditRepository(Protocol):
    """Append-only audit store; records are never updated or deleted."""

    def append_audit(self, record: AuditRecord) -> None: ...

    def list_audit(
        self, *, entity_type: str, entity_id: Optional[int] = None
    ) -> list[AuditRecord]: ...


class CustomerRepository(AuditRepository, Protocol):
    def save_customer(self, customer: Customer) -> None: ...

    def find_customer(self, customer_id: int) -> Optional[Customer]: ...

    def find_customer_by_email(self, email: str) -> Optional[Customer]: ...

    def find_customer_by_document(self, document: str) -> Optional[Customer]: ...

    def find_customer_by_idempotency_key(self, idempotency_key: str) -> Optional[Customer]: ...


class ProposalRepository(AuditRepository, Protocol):
    def find_proposal(self, proposal_id: int) -> Optional[Proposal]: ...

    def find_proposal_by_idempotency_key(self, idempotency_key: str) -> Optional[Proposal]: ...

    def save_proposal(self, proposal: Proposal) -> None:
        """Assign ``proposal_id`` on first save; compare-and-set on ``version - 1`` after.

        Raises ``VersionConflictError`` when the stored version is not the one the
        caller loaded, and ``IdempotencyKeyConflictError`` when a new proposal reuses
        a creation key owned by another proposal.
        """
        ...

    def find_customer(self, customer_id: int) -> Optional[Customer]: ...

    def find_idempotent_operation(
        self, *, idempotency_key: str, operation_type: OperationType
    ) -> Optional[IdempotentOperationRecord]: ...

    def save_idempotent_operation(
        self, record: IdempotentOperationRecord
    ) -> IdempotentOperationRecord:
        """Store the record unless the (key, operation type) pair exists; return the stored one."""
        ...

    def query_proposals(self, criteria: ProposalCriteria) -> tuple[list[Proposal], int]: ...
