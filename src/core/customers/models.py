import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_CUSTOMER_NAME_LENGTH = 3


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not _EMAIL_REGEX.match(normalized):
        raise ValueError("customer email is invalid")
    return normalized


class Customer(BaseModel):
    customer_id: Optional[int] = Field(
        default=None, description="Repository-assigned identifier.", examples=[1]
    )
    name: str = Field(description="Customer display name.", examples=["Acme Ltda"])
    email: str = Field(description="Unique contact email.", examples=["buyer@acme.com"])
    document: Optional[str] = Field(
        default=None, description="Optional unique tax/registration document."
    )
    idempotency_key: Optional[str] = Field(
        default=None, description="Creation idempotency key supplied by the client."
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if len(normalized) < MIN_CUSTOMER_NAME_LENGTH:
            raise ValueError(
                f"customer name must have at least {MIN_CUSTOMER_NAME_LENGTH} characters"
            )
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator("document", "idempotency_key")
    @classmethod
    def _strip_optional(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None

    def audit_snapshot(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "name": self.name,
            "email": self.email,
            "document": self.document,
            "deleted_at": self.deleted_at.isoformat() if self.deleted_at else None,
        }
