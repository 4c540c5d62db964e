from enum import Enum
from typing import Optional

from src.core.proposals.errors import (
    EntityNotEditableError,
    InvalidTransitionError,
    SameStateTransitionError,
    TerminalStateImmutableError,
)


class ProposalState(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def permits_edit(self) -> bool:
        return self is ProposalState.DRAFT

    @property
    def allowed_targets(self) -> tuple["ProposalState", ...]:
        return TRANSITION_MAP[self]

    @property
    def timestamp_field(self) -> Optional[str]:
        """Name of the proposal timestamp stamped the first time this state is reached."""
        return _TIMESTAMP_FIELDS.get(self)


TERMINAL_STATES = frozenset(
    {ProposalState.ACCEPTED, ProposalState.REJECTED, ProposalState.CANCELLED}
)

TRANSITION_MAP: dict[ProposalState, tuple[ProposalState, ...]] = {
    ProposalState.DRAFT: (ProposalState.SENT, ProposalState.CANCELLED),
    ProposalState.SENT: (
        ProposalState.ACCEPTED,
        ProposalState.REJECTED,
        ProposalState.CANCELLED,
    ),
    ProposalState.ACCEPTED: (),
    ProposalState.REJECTED: (),
    ProposalState.CANCELLED: (),
}

_TIMESTAMP_FIELDS: dict[ProposalState, str] = {
    ProposalState.SENT: "sent_at",
    ProposalState.ACCEPTED: "responded_at",
    ProposalState.REJECTED: "responded_at",
}


class ProposalTransitionValidator:
    """Stateless guard over the proposal transition table.

    Every check either returns ``None`` or raises one typed lifecycle error; no
    method mutates anything.
    """

    def validate_transition(self, current: ProposalState, target: ProposalState) -> None:
        if current.is_terminal:
            raise TerminalStateImmutableError(state=current)
        if current == target:
            raise SameStateTransitionError(state=current)
        if target not in current.allowed_targets:
            raise InvalidTransitionError(current_state=current, target_state=target)

    def validate_edit_permission(self, current: ProposalState) -> None:
        if not current.permits_edit:
            raise EntityNotEditableError(state=current)

    def validate_cancellation_permission(self, current: ProposalState) -> None:
        # Only the terminal rule applies to cancellation for now.
        if current.is_terminal:
            raise TerminalStateImmutableError(state=current)

    def describe_transitions(self, current: ProposalState) -> str:
        if current.is_terminal:
            return f"{current.value} is terminal and allows no transitions"
        targets = ", ".join(state.value for state in current.allowed_targets)
        return f"{current.value} -> {targets}"
