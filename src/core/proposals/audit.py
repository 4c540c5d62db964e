import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.core.proposals.models import AuditEvent, AuditRecord
from src.core.proposals.repository import AuditRepository

logger = logging.getLogger(__name__)

PROPOSAL_ENTITY_TYPE = "Proposal"


class FieldChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    before: Any
    after: Any


class AuditDiff(BaseModel):
    """Field-level difference between two snapshots.

    ``changed`` holds keys present on both sides with structurally different
    values, ``added`` keys only present after, ``removed`` keys only present
    before. Unchanged keys appear nowhere.
    """

    model_config = ConfigDict(frozen=True)

    changed: Dict[str, FieldChange] = Field(default_factory=dict)
    added: Dict[str, Any] = Field(default_factory=dict)
    removed: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.changed or self.added or self.removed)

    def prior_values(self) -> Dict[str, Any]:
        values = {key: change.before for key, change in self.changed.items()}
        values.update(self.removed)
        return values

    def new_values(self) -> Dict[str, Any]:
        values = {key: change.after for key, change in self.changed.items()}
        values.update(self.added)
        return values


def compute_diff(before: Dict[str, Any], after: Dict[str, Any]) -> AuditDiff:
    changed: Dict[str, FieldChange] = {}
    added: Dict[str, Any] = {}
    removed: Dict[str, Any] = {}
    for key, old_value in before.items():
        if key not in after:
            removed[key] = old_value
        elif old_value != after[key]:
            changed[key] = FieldChange(before=old_value, after=after[key])
    for key, new_value in after.items():
        if key not in before:
            added[key] = new_value
    return AuditDiff(changed=changed, added=added, removed=removed)


class ProposalAuditTrail:
    """Builds exactly one typed audit record per mutation and appends it."""

    def __init__(
        self,
        *,
        repository: AuditRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record_created(
        self,
        *,
        entity_id: Optional[int],
        snapshot: Dict[str, Any],
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        entity_type: str = PROPOSAL_ENTITY_TYPE,
    ) -> AuditRecord:
        return self._append(
            AuditRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                event=AuditEvent.CREATED,
                prior_state={},
                new_state=dict(snapshot),
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=occurred_at or self._clock(),
            )
        )

    def record_fields_updated(
        self,
        *,
        entity_id: int,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        entity_type: str = PROPOSAL_ENTITY_TYPE,
    ) -> AuditRecord:
        diff = compute_diff(before, after)
        if diff.is_empty:
            # No-op updates are still recorded to keep the call history complete.
            logger.info(
                "audit.empty_diff",
                extra={"extra_fields": {"entity_type": entity_type, "entity_id": entity_id}},
            )
        return self._append(
            AuditRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                event=AuditEvent.UPDATED_FIELDS,
                prior_state=diff.prior_values(),
                new_state=diff.new_values(),
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=occurred_at or self._clock(),
            )
        )

    def record_status_changed(
        self,
        *,
        entity_id: int,
        state_before: str,
        state_after: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        entity_type: str = PROPOSAL_ENTITY_TYPE,
    ) -> AuditRecord:
        prior_state = {**before, "state": state_before, "state_before": state_before}
        new_state = {
            **after,
            "state": state_after,
            "state_before": state_before,
            "state_after": state_after,
        }
        return self._append(
            AuditRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                event=AuditEvent.STATUS_CHANGED,
                prior_state=prior_state,
                new_state=new_state,
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=occurred_at or self._clock(),
            )
        )

    def record_logical_deletion(
        self,
        *,
        entity_type: str,
        entity_id: int,
        snapshot: Dict[str, Any],
        actor_id: Optional[str] = None,
        origin_ip: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> AuditRecord:
        return self._append(
            AuditRecord(
                entity_type=entity_type,
                entity_id=entity_id,
                event=AuditEvent.DELETED_LOGICAL,
                prior_state=dict(snapshot),
                new_state={},
                actor_id=actor_id,
                origin_ip=origin_ip,
                occurred_at=occurred_at or self._clock(),
            )
        )

    def _append(self, record: AuditRecord) -> AuditRecord:
        self._repository.append_audit(record)
        return record
