import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from src.core.customers.models import Customer
from src.core.proposals.audit import ProposalAuditTrail
from src.core.proposals.errors import (
    CustomerConflictError,
    CustomerNotFoundError,
    ProposalValidationError,
)
from src.core.proposals.repository import CustomerRepository

logger = logging.getLogger(__name__)

CUSTOMER_ENTITY_TYPE = "Customer"


class CustomerRegistryService:
    def __init__(
        self,
        *,
        repository: CustomerRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit = ProposalAuditTrail(repository=repository, clock=self._clock)

    def register_customer(
        self,
        *,
        name: str,
        email: str,
        document: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Customer:
        if idempotency_key is not None and idempotency_key.strip():
            existing = self._repository.find_customer_by_idempotency_key(idempotency_key.strip())
            if existing is not None:
                return existing

        try:
            customer = Customer(
                name=name,
                email=email,
                document=document,
                idempotency_key=idempotency_key,
                created_at=self._clock(),
            )
        except ValidationError as exc:
            raise ProposalValidationError(
                f"INVALID_CUSTOMER: {exc.errors()[0]['msg']}"
            ) from exc

        if self._repository.find_customer_by_email(customer.email) is not None:
            raise CustomerConflictError(f"CUSTOMER_EMAIL_TAKEN: {customer.email}")
        if (
            customer.document is not None
            and self._repository.find_customer_by_document(customer.document) is not None
        ):
            raise CustomerConflictError(f"CUSTOMER_DOCUMENT_TAKEN: {customer.document}")

        try:
            self._repository.save_customer(customer)
        except CustomerConflictError:
            # A concurrent registration with the same key won; hand back that customer.
            winner = (
                self._repository.find_customer_by_idempotency_key(customer.idempotency_key)
                if customer.idempotency_key is not None
                else None
            )
            if winner is None:
                raise
            return winner

        logger.info(
            "customer.registered",
            extra={"extra_fields": {"customer_id": customer.customer_id, "actor_id": actor_id}},
        )
        self._audit.record_created(
            entity_type=CUSTOMER_ENTITY_TYPE,
            entity_id=customer.customer_id,
            snapshot=customer.audit_snapshot(),
            actor_id=actor_id,
            origin_ip=origin_ip,
            occurred_at=customer.created_at,
        )
        return customer

    def get_customer(self, *, customer_id: int) -> Customer:
        customer = self._repository.find_customer(customer_id)
        if customer is None:
            raise CustomerNotFoundError(f"CUSTOMER_NOT_FOUND: {customer_id}")
        return customer

    def deactivate_customer(
        self,
        *,
        customer_id: int,
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
    ) -> Customer:
        """Soft-delete a customer; proposals keep their embedded snapshot."""
        customer = self.get_customer(customer_id=customer_id)
        if not customer.is_active:
            return customer

        snapshot = customer.audit_snapshot()
        now = self._clock()
        customer.deleted_at = now
        customer.updated_at = now
        self._repository.save_customer(customer)
        logger.info(
            "customer.deactivated",
            extra={"extra_fields": {"customer_id": customer_id, "actor_id": actor_id}},
        )
        self._audit.record_logical_deletion(
            entity_type=CUSTOMER_ENTITY_TYPE,
            entity_id=customer_id,
            snapshot=snapshot,
            actor_id=actor_id,
            origin_ip=origin_ip,
            occurred_at=now,
        )
        return customer
