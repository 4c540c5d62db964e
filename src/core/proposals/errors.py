from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from src.core.proposals.state_machine import ProposalState


class ProposalLifecycleError(Exception):
    pass


class ResourceNotFoundError(ProposalLifecycleError):
    pass


class ProposalNotFoundError(ResourceNotFoundError):
    pass


class CustomerNotFoundError(ResourceNotFoundError):
    pass


class ProposalValidationError(ProposalLifecycleError):
    pass


class VersionConflictError(ProposalLifecycleError):
    def __init__(self, *, actual_version: int, expected_version: int) -> None:
        self.actual_version = actual_version
        self.expected_version = expected_version
        super().__init__(
            f"VERSION_CONFLICT: actual_version={actual_version} "
            f"expected_version={expected_version}"
        )


class InvalidTransitionError(ProposalLifecycleError):
    def __init__(
        self,
        *,
        current_state: "ProposalState",
        target_state: "ProposalState",
        detail: Optional[str] = None,
    ) -> None:
        self.current_state = current_state
        self.target_state = target_state
        if detail is None:
            allowed = ", ".join(state.value for state in current_state.allowed_targets)
            detail = (
                f"{current_state.value} -> {target_state.value} "
                f"(allowed: {allowed or 'none'})"
            )
        super().__init__(f"INVALID_TRANSITION: {detail}")


class SameStateTransitionError(InvalidTransitionError):
    def __init__(self, *, state: "ProposalState") -> None:
        super().__init__(
            current_state=state,
            target_state=state,
            detail=f"already in {state.value}",
        )


class TerminalStateImmutableError(ProposalLifecycleError):
    def __init__(self, *, state: "ProposalState") -> None:
        self.state = state
        super().__init__(f"TERMINAL_STATE_IMMUTABLE: {state.value}")


class EntityNotEditableError(ProposalLifecycleError):
    def __init__(self, *, state: "ProposalState") -> None:
        self.state = state
        super().__init__(f"ENTITY_NOT_EDITABLE: {state.value} (only DRAFT can be edited)")


class IdempotencyKeyConflictError(ProposalLifecycleError):
    def __init__(self, *, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"IDEMPOTENCY_KEY_CONFLICT: {idempotency_key}")


class AuditRecordImmutableError(ProposalLifecycleError):
    pass


class CustomerConflictError(ProposalLifecycleError):
    pass
