import logging
from typing import Optional

from src.core.proposals.errors import ProposalNotFoundError
from src.core.proposals.models import (
    IdempotencyKey,
    IdempotentOperationRecord,
    OperationType,
    Proposal,
)
from src.core.proposals.repository import ProposalRepository

logger = logging.getLogger(__name__)


class ProposalIdempotencyCoordinator:
    """Resolves replays for the two independent idempotency namespaces.

    Creation keys live on the proposal itself and are looked up through
    ``find_proposal_by_idempotency_key``. Operation keys live in the
    ``(idempotency_key, operation_type)`` store, so the same raw key used for
    ``SUBMIT_PROPOSAL`` and ``APPROVE_PROPOSAL`` never collides.
    """

    def __init__(self, *, repository: ProposalRepository) -> None:
        self._repository = repository

    def find_created(self, key: IdempotencyKey) -> Optional[Proposal]:
        proposal = self._repository.find_proposal_by_idempotency_key(key.value)
        if proposal is not None:
            logger.info(
                "proposal.idempotent_replay",
                extra={
                    "extra_fields": {
                        "operation_type": "CREATE_PROPOSAL",
                        "proposal_id": proposal.proposal_id,
                    }
                },
            )
        return proposal

    def find_replay(
        self, *, key: IdempotencyKey, operation_type: OperationType
    ) -> Optional[Proposal]:
        record = self._repository.find_idempotent_operation(
            idempotency_key=key.value, operation_type=operation_type
        )
        if record is None:
            return None
        proposal = self._repository.find_proposal(record.entity_id)
        if proposal is None:
            raise ProposalNotFoundError("PROPOSAL_IDEMPOTENCY_REFERENT_NOT_FOUND")
        logger.info(
            "proposal.idempotent_replay",
            extra={
                "extra_fields": {
                    "operation_type": operation_type.value,
                    "proposal_id": proposal.proposal_id,
                }
            },
        )
        return proposal

    def record_outcome(
        self, *, key: IdempotencyKey, operation_type: OperationType, proposal: Proposal
    ) -> IdempotentOperationRecord:
        if proposal.proposal_id is None:
            raise ValueError("cannot record an operation outcome for an unsaved proposal")
        return self._repository.save_idempotent_operation(
            IdempotentOperationRecord(
                idempotency_key=key.value,
                operation_type=operation_type,
                entity_id=proposal.proposal_id,
                result_snapshot=proposal.audit_snapshot(),
            )
        )
