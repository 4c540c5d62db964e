from src.core.proposals.audit import AuditDiff, FieldChange, ProposalAuditTrail, compute_diff
from src.core.proposals.errors import (
    AuditRecordImmutableError,
    CustomerConflictError,
    CustomerNotFoundError,
    EntityNotEditableError,
    IdempotencyKeyConflictError,
    InvalidTransitionError,
    ProposalLifecycleError,
    ProposalNotFoundError,
    ProposalValidationError,
    ResourceNotFoundError,
    SameStateTransitionError,
    TerminalStateImmutableError,
    VersionConflictError,
)
from src.core.proposals.idempotency import ProposalIdempotencyCoordinator
from src.core.proposals.models import (
    AuditEvent,
    AuditRecord,
    CustomerSnapshot,
    IdempotencyKey,
    IdempotentOperationRecord,
    Money,
    OperationType,
    Proposal,
)
from src.core.proposals.query import ProposalCriteria, ProposalIndex, ProposalPage
from src.core.proposals.repository import (
    AuditRepository,
    CustomerRepository,
    ProposalRepository,
)
from src.core.proposals.service import ProposalWorkflowService
from src.core.proposals.state_machine import (
    TERMINAL_STATES,
    TRANSITION_MAP,
    ProposalState,
    ProposalTransitionValidator,
)

__all__ = [
    "AuditDiff",
    "AuditEvent",
    "AuditRecord",
    "AuditRecordImmutableError",
    "AuditRepository",
    "CustomerConflictError",
    "CustomerNotFoundError",
    "CustomerRepository",
    "CustomerSnapshot",
    "EntityNotEditableError",
    "FieldChange",
    "IdempotencyKey",
    "IdempotencyKeyConflictError",
    "IdempotentOperationRecord",
    "InvalidTransitionError",
    "Money",
    "OperationType",
    "Proposal",
    "ProposalAuditTrail",
    "ProposalCriteria",
    "ProposalIdempotencyCoordinator",
    "ProposalIndex",
    "ProposalLifecycleError",
    "ProposalNotFoundError",
    "ProposalPage",
    "ProposalRepository",
    "ProposalState",
    "ProposalTransitionValidator",
    "ProposalValidationError",
    "ProposalWorkflowService",
    "ResourceNotFoundError",
    "SameStateTransitionError",
    "TERMINAL_STATES",
    "TRANSITION_MAP",
    "TerminalStateImmutableError",
    "VersionConflictError",
    "compute_diff",
]
