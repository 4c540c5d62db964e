import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.core.customers.models import normalize_email
from src.core.proposals.state_machine import ProposalState, ProposalTransitionValidator

_MONEY_QUANTUM = Decimal("0.01")
MAX_IDEMPOTENCY_KEY_LENGTH = 255


class OperationType(str, Enum):
    SUBMIT_PROPOSAL = "SUBMIT_PROPOSAL"
    APPROVE_PROPOSAL = "APPROVE_PROPOSAL"
    REJECT_PROPOSAL = "REJECT_PROPOSAL"
    CANCEL_PROPOSAL = "CANCEL_PROPOSAL"


class Money(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(
        description="Positive monetary amount, rounded half-up to 2 decimal places.",
        examples=["1500.00"],
    )

    @field_validator("amount")
    @classmethod
    def _validate_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite():
            raise ValueError("amount must be a finite number")
        quantized = value.quantize(_MONEY_QUANTUM, rounding=ROUND_HALF_UP)
        if quantized <= Decimal("0"):
            raise ValueError("amount must be greater than zero")
        return quantized

    def __str__(self) -> str:
        return str(self.amount)


class IdempotencyKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str = Field(
        description="Client-supplied deduplication token.",
        examples=["proposal-create-001"],
    )

    @field_validator("value")
    @classmethod
    def _validate_value(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("idempotency key must not be empty")
        if len(normalized) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise ValueError(
                f"idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )
        return normalized

    def __str__(self) -> str:
        return self.value


class CustomerSnapshot(BaseModel):
    """Customer identity frozen onto a proposal at creation time."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Customer display name.", examples=["Acme Ltda"])
    email: str = Field(description="Lowercased contact email.", examples=["buyer@acme.com"])
    document: Optional[str] = Field(
        default=None, description="Optional tax/registration document.", examples=["12345678900"]
    )

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("customer name is required")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("document")
    @classmethod
    def _normalize_document(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class Proposal(BaseModel):
    proposal_id: Optional[int] = Field(
        default=None, description="Repository-assigned identifier.", examples=[1]
    )
    customer_id: int = Field(description="Referenced customer identifier.", examples=[1])
    customer: CustomerSnapshot
    value: Money
    state: ProposalState = Field(default=ProposalState.DRAFT, examples=["DRAFT"])
    version: int = Field(default=1, ge=1, description="Optimistic concurrency counter.")
    idempotency_key: Optional[IdempotencyKey] = None
    created_at: datetime = Field(default_factory=lambda: _utc_now())
    updated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def can_be_edited(self) -> bool:
        return self.state.permits_edit

    def transition(
        self,
        target: ProposalState,
        *,
        validator: Optional[ProposalTransitionValidator] = None,
        at: Optional[datetime] = None,
    ) -> None:
        (validator or ProposalTransitionValidator()).validate_transition(self.state, target)
        self.state = target
        self._bump_version(at)

    def update_value(
        self,
        new_value: Money,
        *,
        validator: Optional[ProposalTransitionValidator] = None,
        at: Optional[datetime] = None,
    ) -> None:
        (validator or ProposalTransitionValidator()).validate_edit_permission(self.state)
        self.value = new_value
        self._bump_version(at)

    def check_version(self, expected_version: int) -> bool:
        return self.version == expected_version

    def mark_reached(self, state: ProposalState, *, at: datetime) -> bool:
        field_name = state.timestamp_field
        if field_name is None or getattr(self, field_name) is not None:
            return False
        setattr(self, field_name, at)
        return True

    def audit_snapshot(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "customer_id": self.customer_id,
            "customer": self.customer.model_dump(mode="json"),
            "value": str(self.value.amount),
            "state": self.state.value,
            "version": self.version,
            "idempotency_key": (
                self.idempotency_key.value if self.idempotency_key is not None else None
            ),
        }

    def _bump_version(self, at: Optional[datetime]) -> None:
        self.version += 1
        self.updated_at = at or _utc_now()


class AuditEvent(str, Enum):
    CREATED = "CREATED"
    UPDATED_FIELDS = "UPDATED_FIELDS"
    STATUS_CHANGED = "STATUS_CHANGED"
    DELETED_LOGICAL = "DELETED_LOGICAL"

    @property
    def requires_prior_state(self) -> bool:
        return self is not AuditEvent.CREATED

    @property
    def requires_new_state(self) -> bool:
        return self is not AuditEvent.DELETED_LOGICAL


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    audit_id: str = Field(
        default_factory=lambda: f"aud_{uuid.uuid4().hex[:12]}",
        description="Audit record identifier.",
        examples=["aud_0a1b2c3d4e5f"],
    )
    entity_type: str = Field(description="Audited entity type.", examples=["Proposal"])
    entity_id: Optional[int] = Field(description="Audited entity identifier.", examples=[1])
    event: AuditEvent
    prior_state: Dict[str, Any] = Field(default_factory=dict)
    new_state: Dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[str] = Field(default=None, examples=["advisor_1"])
    origin_ip: Optional[str] = Field(default=None, examples=["10.0.0.1"])
    occurred_at: datetime = Field(default_factory=lambda: _utc_now())


class IdempotentOperationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    idempotency_key: str = Field(description="Client-supplied operation key.")
    operation_type: OperationType
    entity_id: int = Field(description="Proposal affected by the operation.")
    result_snapshot: Dict[str, Any] = Field(
        default_factory=dict, description="Proposal audit snapshot after the operation."
    )
    created_at: datetime = Field(default_factory=lambda: _utc_now())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
