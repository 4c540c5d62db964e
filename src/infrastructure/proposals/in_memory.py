from copy import deepcopy
from threading import Lock
from typing import Optional

from src.core.customers.models import Customer
from src.core.proposals.errors import (
    AuditRecordImmutableError,
    CustomerConflictError,
    IdempotencyKeyConflictError,
    VersionConflictError,
)
from src.core.proposals.models import (
    AuditRecord,
    IdempotentOperationRecord,
    OperationType,
    Proposal,
)
from src.core.proposals.query import ProposalCriteria, ProposalIndex, select_proposals
from src.core.proposals.repository import CustomerRepository, ProposalRepository


class InMemoryProposalRepository(ProposalRepository, CustomerRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._next_proposal_id = 1
        self._next_customer_id = 1
        self._proposals: dict[int, Proposal] = {}
        self._proposal_by_idempotency_key: dict[str, int] = {}
        self._index = ProposalIndex()
        self._customers: dict[int, Customer] = {}
        self._operations: dict[tuple[str, OperationType], IdempotentOperationRecord] = {}
        self._audit: list[AuditRecord] = []
        self._audit_ids: set[str] = set()

    def find_proposal(self, proposal_id: int) -> Optional[Proposal]:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return deepcopy(proposal) if proposal is not None else None

    def find_proposal_by_idempotency_key(self, idempotency_key: str) -> Optional[Proposal]:
        with self._lock:
            proposal_id = self._proposal_by_idempotency_key.get(idempotency_key)
            if proposal_id is None:
                return None
            return deepcopy(self._proposals[proposal_id])

    def save_proposal(self, proposal: Proposal) -> None:
        with self._lock:
            if proposal.proposal_id is None:
                self._insert_proposal(proposal)
            else:
                self._compare_and_set_proposal(proposal)
            self._index.index(proposal)

    def query_proposals(self, criteria: ProposalCriteria) -> tuple[list[Proposal], int]:
        with self._lock:
            rows, total = select_proposals(criteria, index=self._index, proposals=self._proposals)
            return [deepcopy(row) for row in rows], total

    def find_idempotent_operation(
        self, *, idempotency_key: str, operation_type: OperationType
    ) -> Optional[IdempotentOperationRecord]:
        with self._lock:
            record = self._operations.get((idempotency_key, operation_type))
            return deepcopy(record) if record is not None else None

    def save_idempotent_operation(
        self, record: IdempotentOperationRecord
    ) -> IdempotentOperationRecord:
        with self._lock:
            stored = self._operations.setdefault(
                (record.idempotency_key, record.operation_type), deepcopy(record)
            )
            return deepcopy(stored)

    def append_audit(self, record: AuditRecord) -> None:
        with self._lock:
            if record.audit_id in self._audit_ids:
                raise AuditRecordImmutableError(f"AUDIT_RECORD_EXISTS: {record.audit_id}")
            self._audit_ids.add(record.audit_id)
            self._audit.append(deepcopy(record))

    def list_audit(
        self, *, entity_type: str, entity_id: Optional[int] = None
    ) -> list[AuditRecord]:
        with self._lock:
            return [
                deepcopy(record)
                for record in self._audit
                if record.entity_type == entity_type
                and (entity_id is None or record.entity_id == entity_id)
            ]

    def save_customer(self, customer: Customer) -> None:
        with self._lock:
            self._check_customer_unique(customer)
            if customer.customer_id is None:
                customer.customer_id = self._next_customer_id
                self._next_customer_id += 1
            self._customers[customer.customer_id] = deepcopy(customer)

    def find_customer(self, customer_id: int) -> Optional[Customer]:
        with self._lock:
            customer = self._customers.get(customer_id)
            return deepcopy(customer) if customer is not None else None

    def find_customer_by_email(self, email: str) -> Optional[Customer]:
        return self._find_customer_where(lambda customer: customer.email == email.strip().lower())

    def find_customer_by_document(self, document: str) -> Optional[Customer]:
        return self._find_customer_where(lambda customer: customer.document == document.strip())

    def find_customer_by_idempotency_key(self, idempotency_key: str) -> Optional[Customer]:
        return self._find_customer_where(
            lambda customer: customer.idempotency_key == idempotency_key
        )

    def _find_customer_where(self, predicate) -> Optional[Customer]:
        with self._lock:
            customer = next((row for row in self._customers.values() if predicate(row)), None)
            return deepcopy(customer) if customer is not None else None

    def _check_customer_unique(self, customer: Customer) -> None:
        # Mirrors the UNIQUE columns of the customers table; caller holds the lock.
        for other in self._customers.values():
            if other.customer_id == customer.customer_id:
                continue
            if other.email == customer.email:
                raise CustomerConflictError(f"CUSTOMER_EMAIL_TAKEN: {customer.email}")
            if customer.document is not None and other.document == customer.document:
                raise CustomerConflictError(f"CUSTOMER_DOCUMENT_TAKEN: {customer.document}")
            if (
                customer.idempotency_key is not None
                and other.idempotency_key == customer.idempotency_key
            ):
                raise CustomerConflictError(
                    f"CUSTOMER_IDEMPOTENCY_KEY_TAKEN: {customer.idempotency_key}"
                )

    def _insert_proposal(self, proposal: Proposal) -> None:
        key = proposal.idempotency_key.value if proposal.idempotency_key is not None else None
        if key is not None and key in self._proposal_by_idempotency_key:
            raise IdempotencyKeyConflictError(idempotency_key=key)
        proposal.proposal_id = self._next_proposal_id
        self._next_proposal_id += 1
        self._proposals[proposal.proposal_id] = deepcopy(proposal)
        if key is not None:
            self._proposal_by_idempotency_key[key] = proposal.proposal_id

    def _compare_and_set_proposal(self, proposal: Proposal) -> None:
        assert proposal.proposal_id is not None
        stored = self._proposals.get(proposal.proposal_id)
        if stored is None:
            raise KeyError(f"PROPOSAL_NOT_PERSISTED: {proposal.proposal_id}")
        expected_version = proposal.version - 1
        if stored.version != expected_version:
            raise VersionConflictError(
                actual_version=stored.version, expected_version=expected_version
            )
        self._proposals[proposal.proposal_id] = deepcopy(proposal)
