import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Union

from pydantic import ValidationError

from src.core.customers.models import Customer
from src.core.proposals.audit import PROPOSAL_ENTITY_TYPE, ProposalAuditTrail
from src.core.proposals.errors import (
    CustomerNotFoundError,
    IdempotencyKeyConflictError,
    ProposalNotFoundError,
    ProposalValidationError,
    VersionConflictError,
)
from src.core.proposals.idempotency import ProposalIdempotencyCoordinator
from src.core.proposals.models import (
    AuditRecord,
    CustomerSnapshot,
    IdempotencyKey,
    Money,
    OperationType,
    Proposal,
)
from src.core.proposals.query import DEFAULT_PAGE_SIZE, ProposalCriteria, ProposalPage
from src.core.proposals.repository import ProposalRepository
from src.core.proposals.state_machine import ProposalState, ProposalTransitionValidator

logger = logging.getLogger(__name__)

MoneyInput = Union[Money, Decimal, str, int, float]


class ProposalWorkflowService:
    """Orchestrates proposal use cases over a single repository.

    Every mutating call follows the same order: idempotency short-circuit,
    load, version check, snapshot, domain mutation, persist, audit append and,
    for keyed state operations, recording the idempotency outcome. The
    mutation is persisted before the audit append, so an audit failure leaves
    the mutation in place and surfaces the error to the caller.
    """

    def __init__(
        self,
        *,
        repository: ProposalRepository,
        validator: Optional[ProposalTransitionValidator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._repository = repository
        self._default_page_size = default_page_size
        self._validator = validator or ProposalTransitionValidator()
        self._clock = clock or _utc_now
        self._audit = ProposalAuditTrail(repository=repository, clock=self._clock)
        self._idempotency = ProposalIdempotencyCoordinator(repository=repository)

    def create_proposal(
        self,
        *,
        customer_id: int,
        value: MoneyInput,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Proposal:
        key = _build_idempotency_key(idempotency_key)
        if key is not None:
            existing = self._idempotency.find_created(key)
            if existing is not None:
                return existing

        money = _build_money(value)
        customer = self._repository.find_customer(customer_id)
        if customer is None or not customer.is_active:
            raise CustomerNotFoundError(f"CUSTOMER_NOT_FOUND: {customer_id}")

        proposal = Proposal(
            customer_id=customer_id,
            customer=_snapshot_customer(customer),
            value=money,
            idempotency_key=key,
            created_at=self._clock(),
        )
        try:
            self._repository.save_proposal(proposal)
        except IdempotencyKeyConflictError:
            # A concurrent create with the same key won; hand back its proposal.
            winner = self._idempotency.find_created(key) if key is not None else None
            if winner is None:
                raise
            return winner

        logger.info(
            "proposal.created",
            extra={
                "extra_fields": {
                    "proposal_id": proposal.proposal_id,
                    "customer_id": customer_id,
                    "actor_id": actor_id,
                }
            },
        )
        self._append_audit(
            proposal,
            lambda: self._audit.record_created(
                entity_id=proposal.proposal_id,
                snapshot=proposal.audit_snapshot(),
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=proposal.created_at,
            ),
        )
        return proposal

    def submit_proposal(
        self,
        *,
        proposal_id: int,
        expected_version: int,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Proposal:
        return self._transition(
            proposal_id=proposal_id,
            expected_version=expected_version,
            target=ProposalState.SENT,
            operation_type=OperationType.SUBMIT_PROPOSAL,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
            origin_ip=origin_ip,
        )

    def approve_proposal(
        self,
        *,
        proposal_id: int,
        expected_version: int,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Proposal:
        return self._transition(
            proposal_id=proposal_id,
            expected_version=expected_version,
            target=ProposalState.ACCEPTED,
            operation_type=OperationType.APPROVE_PROPOSAL,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
            origin_ip=origin_ip,
        )

    def reject_proposal(
        self,
        *,
        proposal_id: int,
        expected_version: int,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Proposal:
        return self._transition(
            proposal_id=proposal_id,
            expected_version=expected_version,
            target=ProposalState.REJECTED,
            operation_type=OperationType.REJECT_PROPOSAL,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
            origin_ip=origin_ip,
        )

    def cancel_proposal(
        self,
        *,
        proposal_id: int,
        expected_version: int,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Proposal:
        return self._transition(
            proposal_id=proposal_id,
            expected_version=expected_version,
            target=ProposalState.CANCELLED,
            operation_type=OperationType.CANCEL_PROPOSAL,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
            origin_ip=origin_ip,
        )

    def update_proposal_value(
        self,
        *,
        proposal_id: int,
        expected_version: int,
        value: MoneyInput,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Proposal:
        money = _build_money(value)
        proposal = self._load_for_update(proposal_id=proposal_id, expected_version=expected_version)
        before = proposal.audit_snapshot()

        updated_at = self._clock()
        proposal.update_value(money, validator=self._validator, at=updated_at)
        self._save(proposal, expected_version=expected_version)

        logger.info(
            "proposal.value_updated",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "version": proposal.version,
                    "actor_id": actor_id,
                }
            },
        )
        self._append_audit(
            proposal,
            lambda: self._audit.record_fields_updated(
                entity_id=proposal_id,
                before=before,
                after=proposal.audit_snapshot(),
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=updated_at,
            ),
        )
        return proposal

    def get_proposal(self, *, proposal_id: int) -> Proposal:
        proposal = self._repository.find_proposal(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(f"PROPOSAL_NOT_FOUND: {proposal_id}")
        return proposal

    def list_proposals(self, criteria: Optional[ProposalCriteria] = None) -> ProposalPage:
        resolved = criteria or ProposalCriteria(page_size=self._default_page_size)
        items, total = self._repository.query_proposals(resolved)
        return ProposalPage(
            items=items,
            total=total,
            page=resolved.page,
            page_size=resolved.page_size,
        )

    def list_audit_trail(self, *, proposal_id: int) -> list[AuditRecord]:
        return self._repository.list_audit(entity_type=PROPOSAL_ENTITY_TYPE, entity_id=proposal_id)

    def _transition(
        self,
        *,
        proposal_id: int,
        expected_version: int,
        target: ProposalState,
        operation_type: OperationType,
        idempotency_key: Optional[str],
        actor_id: Optional[str],
        origin_ip: Optional[str],
    ) -> Proposal:
        key = _build_idempotency_key(idempotency_key)
        if key is not None:
            replay = self._idempotency.find_replay(key=key, operation_type=operation_type)
            if replay is not None:
                return replay

        proposal = self._load_for_update(proposal_id=proposal_id, expected_version=expected_version)
        state_before = proposal.state
        before = proposal.audit_snapshot()

        if target is ProposalState.CANCELLED:
            self._validator.validate_cancellation_permission(proposal.state)
        occurred_at = self._clock()
        proposal.transition(target, validator=self._validator, at=occurred_at)
        proposal.mark_reached(target, at=occurred_at)
        self._save(proposal, expected_version=expected_version)

        logger.info(
            "proposal.transitioned",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "from_state": state_before.value,
                    "to_state": target.value,
                    "version": proposal.version,
                    "actor_id": actor_id,
                }
            },
        )
        self._append_audit(
            proposal,
            lambda: self._audit.record_status_changed(
                entity_id=proposal_id,
                state_before=state_before.value,
                state_after=target.value,
                before=before,
                after=proposal.audit_snapshot(),
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=occurred_at,
            ),
        )
        if key is not None:
            self._idempotency.record_outcome(
                key=key, operation_type=operation_type, proposal=proposal
            )
        return proposal

    def _load_for_update(self, *, proposal_id: int, expected_version: int) -> Proposal:
        proposal = self.get_proposal(proposal_id=proposal_id)
        if not proposal.check_version(expected_version):
            self._log_version_conflict(
                proposal_id=proposal_id,
                actual_version=proposal.version,
                expected_version=expected_version,
            )
            raise VersionConflictError(
                actual_version=proposal.version, expected_version=expected_version
            )
        return proposal

    def _save(self, proposal: Proposal, *, expected_version: int) -> None:
        try:
            self._repository.save_proposal(proposal)
        except VersionConflictError as exc:
            self._log_version_conflict(
                proposal_id=proposal.proposal_id,
                actual_version=exc.actual_version,
                expected_version=expected_version,
            )
            raise

    def _append_audit(self, proposal: Proposal, write: Callable[[], AuditRecord]) -> AuditRecord:
        try:
            return write()
        except Exception:
            logger.exception(
                "proposal.audit_append_failed",
                extra={
                    "extra_fields": {
                        "proposal_id": proposal.proposal_id,
                        "version": proposal.version,
                    }
                },
            )
            raise

    def _log_version_conflict(
        self, *, proposal_id: Optional[int], actual_version: int, expected_version: int
    ) -> None:
        logger.warning(
            "proposal.version_conflict",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "actual_version": actual_version,
                    "expected_version": expected_version,
                }
            },
        )


def _build_idempotency_key(raw: Optional[str]) -> Optional[IdempotencyKey]:
    if raw is None:
        return None
    try:
        return IdempotencyKey(value=raw)
    except ValidationError as exc:
        raise ProposalValidationError(f"INVALID_IDEMPOTENCY_KEY: {_first_error(exc)}") from exc


def _build_money(value: MoneyInput) -> Money:
    if isinstance(value, Money):
        return value
    try:
        return Money(amount=value)
    except ValidationError as exc:
        raise ProposalValidationError(f"INVALID_VALUE: {_first_error(exc)}") from exc


def _snapshot_customer(customer: Customer) -> CustomerSnapshot:
    try:
        return CustomerSnapshot(
            name=customer.name, email=customer.email, document=customer.document
        )
    except ValidationError as exc:
        raise ProposalValidationError(f"INVALID_CUSTOMER: {_first_error(exc)}") from exc


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    return str(errors[0]["msg"]) if errors else str(exc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
