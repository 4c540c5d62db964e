import logging
from decimal import Decimal

import pytest

from src.core.proposals.errors import (
    CustomerNotFoundError,
    EntityNotEditableError,
    InvalidTransitionError,
    ProposalNotFoundError,
    ProposalValidationError,
    TerminalStateImmutableError,
    VersionConflictError,
)
from src.core.proposals.models import AuditEvent, IdempotentOperationRecord, OperationType
from src.core.proposals.service import ProposalWorkflowService
from src.core.proposals.state_machine import ProposalState
from src.infrastructure.proposals.in_memory import InMemoryProposalRepository
from tests.factories import customer, ticking_clock


def _events(service, proposal_id):
    return [record.event for record in service.list_audit_trail(proposal_id=proposal_id)]


def test_create_proposal_starts_in_draft(lifecycle):
    service, repository, owner = lifecycle

    proposal = service.create_proposal(
        customer_id=owner.customer_id, value="1500.005", actor_id="advisor_1"
    )

    assert proposal.proposal_id == 1
    assert proposal.state is ProposalState.DRAFT
    assert proposal.version == 1
    assert proposal.value.amount == Decimal("1500.01")
    assert proposal.customer.email == "buyer@acme.com"
    assert repository.find_proposal(1) == proposal

    trail = service.list_audit_trail(proposal_id=1)
    assert [record.event for record in trail] == [AuditEvent.CREATED]
    assert trail[0].actor_id == "advisor_1"
    assert trail[0].new_state["state"] == "DRAFT"


def test_create_proposal_is_idempotent_by_key(lifecycle):
    service, _, owner = lifecycle

    first = service.create_proposal(
        customer_id=owner.customer_id, value="10.00", idempotency_key="create-1"
    )
    second = service.create_proposal(
        customer_id=owner.customer_id, value="99.00", idempotency_key=" create-1 "
    )

    assert second.proposal_id == first.proposal_id
    assert second.value.amount == Decimal("10.00")
    assert service.list_proposals().total == 1
    assert _events(service, first.proposal_id) == [AuditEvent.CREATED]


def test_create_proposal_validates_inputs(lifecycle):
    service, _, owner = lifecycle

    with pytest.raises(ProposalValidationError, match="INVALID_VALUE"):
        service.create_proposal(customer_id=owner.customer_id, value="0")
    with pytest.raises(ProposalValidationError, match="INVALID_VALUE"):
        service.create_proposal(customer_id=owner.customer_id, value="abc")
    with pytest.raises(ProposalValidationError, match="INVALID_IDEMPOTENCY_KEY"):
        service.create_proposal(customer_id=owner.customer_id, value="1", idempotency_key="  ")
    with pytest.raises(CustomerNotFoundError, match="CUSTOMER_NOT_FOUND: 42"):
        service.create_proposal(customer_id=42, value="1")


def test_create_proposal_rejects_deactivated_customer(repository):
    owner = customer(repository)
    owner.deleted_at = owner.created_at
    repository.save_customer(owner)
    service = ProposalWorkflowService(repository=repository)

    with pytest.raises(CustomerNotFoundError):
        service.create_proposal(customer_id=owner.customer_id, value="5")


def test_create_race_returns_the_winning_proposal(repository):
    owner = customer(repository)
    service = ProposalWorkflowService(repository=repository)
    winner = service.create_proposal(
        customer_id=owner.customer_id, value="10", idempotency_key="race-1"
    )

    class _LateLookupRepository(InMemoryProposalRepository):
        hidden = True

        def find_proposal_by_idempotency_key(self, idempotency_key):
            if self.hidden:
                self.hidden = False
                return None
            return repository.find_proposal_by_idempotency_key(idempotency_key)

        def find_customer(self, customer_id):
            return repository.find_customer(customer_id)

        def save_proposal(self, proposal):
            repository.save_proposal(proposal)

    racing = ProposalWorkflowService(repository=_LateLookupRepository())
    loser = racing.create_proposal(
        customer_id=owner.customer_id, value="20", idempotency_key="race-1"
    )

    assert loser.proposal_id == winner.proposal_id
    assert loser.value.amount == Decimal("10.00")


def test_full_happy_path_stamps_timestamps(lifecycle):
    service, _, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")

    sent = service.submit_proposal(proposal_id=created.proposal_id, expected_version=1)
    assert sent.state is ProposalState.SENT
    assert sent.version == 2
    assert sent.sent_at is not None
    assert sent.responded_at is None

    accepted = service.approve_proposal(proposal_id=created.proposal_id, expected_version=2)
    assert accepted.state is ProposalState.ACCEPTED
    assert accepted.version == 3
    assert accepted.sent_at == sent.sent_at
    assert accepted.responded_at is not None
    assert accepted.updated_at == accepted.responded_at

    assert _events(service, created.proposal_id) == [
        AuditEvent.CREATED,
        AuditEvent.STATUS_CHANGED,
        AuditEvent.STATUS_CHANGED,
    ]
    last = service.list_audit_trail(proposal_id=created.proposal_id)[-1]
    assert last.prior_state["state_before"] == "SENT"
    assert last.new_state["state_after"] == "ACCEPTED"
    assert last.new_state["version"] == 3


def test_reject_sets_responded_at(lifecycle):
    service, _, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")
    service.submit_proposal(proposal_id=created.proposal_id, expected_version=1)

    rejected = service.reject_proposal(proposal_id=created.proposal_id, expected_version=2)

    assert rejected.state is ProposalState.REJECTED
    assert rejected.responded_at is not None


def test_cancel_from_draft_and_terminal_guard(lifecycle):
    service, _, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")

    cancelled = service.cancel_proposal(proposal_id=created.proposal_id, expected_version=1)
    assert cancelled.state is ProposalState.CANCELLED
    assert cancelled.responded_at is None

    with pytest.raises(TerminalStateImmutableError):
        service.cancel_proposal(proposal_id=created.proposal_id, expected_version=2)
    with pytest.raises(TerminalStateImmutableError):
        service.submit_proposal(proposal_id=created.proposal_id, expected_version=2)
    assert len(service.list_audit_trail(proposal_id=created.proposal_id)) == 2


def test_invalid_transition_is_not_persisted(lifecycle):
    service, repository, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")

    with pytest.raises(InvalidTransitionError):
        service.approve_proposal(proposal_id=created.proposal_id, expected_version=1)

    stored = repository.find_proposal(created.proposal_id)
    assert stored.state is ProposalState.DRAFT
    assert stored.version == 1


def test_stale_expected_version_is_rejected(lifecycle, caplog):
    service, repository, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")
    service.submit_proposal(proposal_id=created.proposal_id, expected_version=1)

    caplog.set_level(logging.WARNING, logger="src.core.proposals.service")
    try:
        service.approve_proposal(proposal_id=created.proposal_id, expected_version=1)
    except VersionConflictError as exc:
        assert exc.actual_version == 2
        assert exc.expected_version == 1
        assert str(exc) == "VERSION_CONFLICT: actual_version=2 expected_version=1"
    else:
        raise AssertionError("Expected VersionConflictError")

    assert repository.find_proposal(created.proposal_id).state is ProposalState.SENT
    assert any(record.getMessage() == "proposal.version_conflict" for record in caplog.records)


def test_operation_key_replays_without_new_audit(lifecycle):
    service, repository, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")

    first = service.submit_proposal(
        proposal_id=created.proposal_id, expected_version=1, idempotency_key="submit-1"
    )
    replay = service.submit_proposal(
        proposal_id=created.proposal_id, expected_version=1, idempotency_key="submit-1"
    )

    assert replay.version == first.version == 2
    assert replay.state is ProposalState.SENT
    assert len(service.list_audit_trail(proposal_id=created.proposal_id)) == 2
    record = repository.find_idempotent_operation(
        idempotency_key="submit-1", operation_type=OperationType.SUBMIT_PROPOSAL
    )
    assert record.entity_id == created.proposal_id
    assert record.result_snapshot["state"] == "SENT"


def test_operation_keys_are_scoped_by_operation_type(lifecycle):
    service, _, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")

    service.submit_proposal(
        proposal_id=created.proposal_id, expected_version=1, idempotency_key="shared"
    )
    accepted = service.approve_proposal(
        proposal_id=created.proposal_id, expected_version=2, idempotency_key="shared"
    )

    assert accepted.state is ProposalState.ACCEPTED
    assert accepted.version == 3


def test_replay_of_missing_proposal_raises(lifecycle):
    service, repository, _ = lifecycle
    repository.save_idempotent_operation(
        IdempotentOperationRecord(
            idempotency_key="orphan",
            operation_type=OperationType.CANCEL_PROPOSAL,
            entity_id=404,
        )
    )

    with pytest.raises(ProposalNotFoundError, match="PROPOSAL_IDEMPOTENCY_REFERENT_NOT_FOUND"):
        service.cancel_proposal(proposal_id=404, expected_version=1, idempotency_key="orphan")


def test_update_value_in_draft_records_field_diff(lifecycle):
    service, _, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")

    updated = service.update_proposal_value(
        proposal_id=created.proposal_id, expected_version=1, value=Decimal("250.00")
    )

    assert updated.value.amount == Decimal("250.00")
    assert updated.version == 2
    record = service.list_audit_trail(proposal_id=created.proposal_id)[-1]
    assert record.event is AuditEvent.UPDATED_FIELDS
    assert record.prior_state == {"value": "100.00", "version": 1}
    assert record.new_state == {"value": "250.00", "version": 2}


def test_update_value_outside_draft_is_rejected(lifecycle):
    service, repository, owner = lifecycle
    created = service.create_proposal(customer_id=owner.customer_id, value="100")
    service.submit_proposal(proposal_id=created.proposal_id, expected_version=1)

    with pytest.raises(EntityNotEditableError):
        service.update_proposal_value(
            proposal_id=created.proposal_id, expected_version=2, value="5"
        )
    assert repository.find_proposal(created.proposal_id).version == 2


def test_get_missing_proposal(lifecycle):
    service, _, _ = lifecycle
    with pytest.raises(ProposalNotFoundError, match="PROPOSAL_NOT_FOUND: 9"):
        service.get_proposal(proposal_id=9)


def test_audit_failure_keeps_persisted_mutation(caplog):
    class _BrokenAuditRepository(InMemoryProposalRepository):
        fail = False

        def append_audit(self, record):
            if self.fail:
                raise RuntimeError("AUDIT_STORE_UNAVAILABLE")
            super().append_audit(record)

    repository = _BrokenAuditRepository()
    owner = customer(repository)
    service = ProposalWorkflowService(repository=repository, clock=ticking_clock())
    created = service.create_proposal(customer_id=owner.customer_id, value="100")
    repository.fail = True

    caplog.set_level(logging.ERROR, logger="src.core.proposals.service")
    with pytest.raises(RuntimeError, match="AUDIT_STORE_UNAVAILABLE"):
        service.submit_proposal(proposal_id=created.proposal_id, expected_version=1)

    stored = repository.find_proposal(created.proposal_id)
    assert stored.state is ProposalState.SENT
    assert stored.version == 2
    failures = [r for r in caplog.records if r.getMessage() == "proposal.audit_append_failed"]
    assert failures
    assert failures[0].extra_fields == {"proposal_id": created.proposal_id, "version": 2}


def test_created_event_is_logged_with_extra_fields(lifecycle, caplog):
    service, _, owner = lifecycle
    caplog.set_level(logging.INFO, logger="src.core.proposals.service")

    created = service.create_proposal(
        customer_id=owner.customer_id, value="100", actor_id="advisor_9"
    )

    records = [r for r in caplog.records if r.getMessage() == "proposal.created"]
    assert records[0].extra_fields == {
        "proposal_id": created.proposal_id,
        "customer_id": owner.customer_id,
        "actor_id": "advisor_9",
    }


def test_audit_timestamps_follow_the_service_clock(lifecycle):
    service, _, owner = lifecycle

    created = service.create_proposal(customer_id=owner.customer_id, value="100")
    updated = service.update_proposal_value(
        proposal_id=created.proposal_id, expected_version=1, value="120"
    )
    sent = service.submit_proposal(proposal_id=created.proposal_id, expected_version=2)

    trail = service.list_audit_trail(proposal_id=created.proposal_id)
    assert [record.occurred_at for record in trail] == [
        created.created_at,
        updated.updated_at,
        sent.sent_at,
    ]
    assert sent.sent_at == sent.updated_at
