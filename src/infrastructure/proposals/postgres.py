import json
from contextlib import closing
from importlib.util import find_spec
from typing import Any, Optional

from src.core.customers.models import Customer
from src.core.proposals.errors import (
    AuditRecordImmutableError,
    CustomerConflictError,
    IdempotencyKeyConflictError,
    VersionConflictError,
)
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
from src.core.proposals.query import ProposalCriteria
from src.core.proposals.state_machine import ProposalState
from src.infrastructure.postgres_migrations import apply_postgres_migrations

_PROPOSAL_COLUMNS = """
    proposal_id,
    customer_id,
    customer_name,
    customer_email,
    customer_document,
    value_amount,
    state,
    version,
    idempotency_key,
    created_at,
    updated_at,
    sent_at,
    responded_at
"""

_CUSTOMER_COLUMNS = """
    customer_id,
    name,
    email,
    document,
    idempotency_key,
    created_at,
    updated_at,
    deleted_at
"""

_SORT_COLUMNS = {
    "id": "proposal_id",
    "value": "value_amount",
    "state": "state",
    "created_at": "created_at",
    "updated_at": "updated_at",
}


class PostgresProposalRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("PROPOSAL_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def find_proposal(self, proposal_id: int) -> Optional[Proposal]:
        query = f"SELECT {_PROPOSAL_COLUMNS} FROM proposals WHERE proposal_id = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (proposal_id,)).fetchone()
        return _to_proposal(row)

    def find_proposal_by_idempotency_key(self, idempotency_key: str) -> Optional[Proposal]:
        query = f"SELECT {_PROPOSAL_COLUMNS} FROM proposals WHERE idempotency_key = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (idempotency_key,)).fetchone()
        return _to_proposal(row)

    def save_proposal(self, proposal: Proposal) -> None:
        with closing(self._connect()) as connection:
            if proposal.proposal_id is None:
                self._insert_proposal(connection=connection, proposal=proposal)
            else:
                self._compare_and_set_proposal(connection=connection, proposal=proposal)
            connection.commit()

    def query_proposals(self, criteria: ProposalCriteria) -> tuple[list[Proposal], int]:
        conditions: list[str] = []
        params: list[Any] = []
        if criteria.customer_id is not None:
            conditions.append("customer_id = %s")
            params.append(criteria.customer_id)
        if criteria.state is not None:
            conditions.append("state = %s")
            params.append(criteria.state.value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        column = _SORT_COLUMNS[criteria.sort_by]
        nulls = "NULLS FIRST" if criteria.direction == "ASC" else "NULLS LAST"
        order = f"ORDER BY {column} {criteria.direction} {nulls}, proposal_id ASC"

        count_query = f"SELECT COUNT(*) AS total FROM proposals {where}"
        page_query = f"""
            SELECT {_PROPOSAL_COLUMNS}, COUNT(*) OVER () AS total
            FROM proposals
            {where}
            {order}
            LIMIT %s OFFSET %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(
                page_query, (*params, criteria.page_size, criteria.offset)
            ).fetchall()
            if rows:
                # The window count is taken from the same snapshot as the page.
                total = int(rows[0]["total"])
            else:
                total_row = connection.execute(count_query, tuple(params)).fetchone()
                total = int(total_row["total"]) if total_row is not None else 0
        proposals = [proposal for proposal in map(_to_proposal, rows) if proposal is not None]
        return proposals, total

    def find_customer(self, customer_id: int) -> Optional[Customer]:
        return self._find_customer_by("customer_id", customer_id)

    def find_customer_by_email(self, email: str) -> Optional[Customer]:
        return self._find_customer_by("email", email.strip().lower())

    def find_customer_by_document(self, document: str) -> Optional[Customer]:
        return self._find_customer_by("document", document.strip())

    def find_customer_by_idempotency_key(self, idempotency_key: str) -> Optional[Customer]:
        return self._find_customer_by("idempotency_key", idempotency_key)

    def save_customer(self, customer: Customer) -> None:
        psycopg, _ = _import_psycopg()
        with closing(self._connect()) as connection:
            try:
                if customer.customer_id is None:
                    self._insert_customer(connection=connection, customer=customer)
                else:
                    self._update_customer(connection=connection, customer=customer)
            except psycopg.errors.UniqueViolation as exc:
                connection.rollback()
                raise CustomerConflictError(_customer_conflict_message(exc, customer)) from exc
            connection.commit()

    def _insert_customer(self, *, connection: Any, customer: Customer) -> None:
        row = connection.execute(
            """
            INSERT INTO customers (
                name,
                email,
                document,
                idempotency_key,
                created_at,
                updated_at,
                deleted_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING customer_id
            """,
            (
                customer.name,
                customer.email,
                customer.document,
                customer.idempotency_key,
                customer.created_at,
                customer.updated_at,
                customer.deleted_at,
            ),
        ).fetchone()
        customer.customer_id = int(row["customer_id"])

    def _update_customer(self, *, connection: Any, customer: Customer) -> None:
        connection.execute(
            """
            UPDATE customers SET
                name = %s,
                email = %s,
                document = %s,
                updated_at = %s,
                deleted_at = %s
            WHERE customer_id = %s
            """,
            (
                customer.name,
                customer.email,
                customer.document,
                customer.updated_at,
                customer.deleted_at,
                customer.customer_id,
            ),
        )

    def find_idempotent_operation(
        self, *, idempotency_key: str, operation_type: OperationType
    ) -> Optional[IdempotentOperationRecord]:
        with closing(self._connect()) as connection:
            return self._select_operation(
                connection=connection,
                idempotency_key=idempotency_key,
                operation_type=operation_type,
            )

    def save_idempotent_operation(
        self, record: IdempotentOperationRecord
    ) -> IdempotentOperationRecord:
        query = """
            INSERT INTO proposal_idempotent_operations (
                idempotency_key,
                operation_type,
                entity_id,
                result_snapshot_json,
                created_at
            ) VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (idempotency_key, operation_type) DO NOTHING
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    record.idempotency_key,
                    record.operation_type.value,
                    record.entity_id,
                    _json_dump(record.result_snapshot),
                    record.created_at,
                ),
            )
            connection.commit()
            stored = self._select_operation(
                connection=connection,
                idempotency_key=record.idempotency_key,
                operation_type=record.operation_type,
            )
        return stored or record

    def append_audit(self, record: AuditRecord) -> None:
        query = """
            INSERT INTO audit_records (
                audit_id,
                entity_type,
                entity_id,
                event,
                prior_state_json,
                new_state_json,
                actor_id,
                origin_ip,
                occurred_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (audit_id) DO NOTHING
        """
        with closing(self._connect()) as connection:
            cursor = connection.execute(
                query,
                (
                    record.audit_id,
                    record.entity_type,
                    record.entity_id,
                    record.event.value,
                    _json_dump(record.prior_state),
                    _json_dump(record.new_state),
                    record.actor_id,
                    record.origin_ip,
                    record.occurred_at,
                ),
            )
            if cursor.rowcount == 0:
                connection.rollback()
                raise AuditRecordImmutableError(f"AUDIT_RECORD_EXISTS: {record.audit_id}")
            connection.commit()

    def list_audit(
        self, *, entity_type: str, entity_id: Optional[int] = None
    ) -> list[AuditRecord]:
        query = """
            SELECT
                audit_id,
                entity_type,
                entity_id,
                event,
                prior_state_json,
                new_state_json,
                actor_id,
                origin_ip,
                occurred_at
            FROM audit_records
            WHERE entity_type = %s
        """
        params: tuple[Any, ...] = (entity_type,)
        if entity_id is not None:
            query += " AND entity_id = %s"
            params = (entity_type, entity_id)
        query += " ORDER BY sequence_no ASC"
        with closing(self._connect()) as connection:
            rows = connection.execute(query, params).fetchall()
        return [_to_audit_record(row) for row in rows]

    def _insert_proposal(self, *, connection: Any, proposal: Proposal) -> None:
        query = """
            INSERT INTO proposals (
                customer_id,
                customer_name,
                customer_email,
                customer_document,
                value_amount,
                state,
                version,
                idempotency_key,
                created_at,
                updated_at,
                sent_at,
                responded_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (idempotency_key) DO NOTHING
            RETURNING proposal_id
        """
        key = proposal.idempotency_key.value if proposal.idempotency_key is not None else None
        row = connection.execute(
            query,
            (
                proposal.customer_id,
                proposal.customer.name,
                proposal.customer.email,
                proposal.customer.document,
                proposal.value.amount,
                proposal.state.value,
                proposal.version,
                key,
                proposal.created_at,
                proposal.updated_at,
                proposal.sent_at,
                proposal.responded_at,
            ),
        ).fetchone()
        if row is None:
            connection.rollback()
            raise IdempotencyKeyConflictError(idempotency_key=key or "")
        proposal.proposal_id = int(row["proposal_id"])

    def _compare_and_set_proposal(self, *, connection: Any, proposal: Proposal) -> None:
        expected_version = proposal.version - 1
        cursor = connection.execute(
            """
            UPDATE proposals SET
                value_amount = %s,
                state = %s,
                version = %s,
                updated_at = %s,
                sent_at = %s,
                responded_at = %s
            WHERE proposal_id = %s AND version = %s
            """,
            (
                proposal.value.amount,
                proposal.state.value,
                proposal.version,
                proposal.updated_at,
                proposal.sent_at,
                proposal.responded_at,
                proposal.proposal_id,
                expected_version,
            ),
        )
        if cursor.rowcount == 1:
            return
        connection.rollback()
        row = connection.execute(
            "SELECT version FROM proposals WHERE proposal_id = %s", (proposal.proposal_id,)
        ).fetchone()
        if row is None:
            raise KeyError(f"PROPOSAL_NOT_PERSISTED: {proposal.proposal_id}")
        raise VersionConflictError(
            actual_version=int(row["version"]), expected_version=expected_version
        )

    def _select_operation(
        self, *, connection: Any, idempotency_key: str, operation_type: OperationType
    ) -> Optional[IdempotentOperationRecord]:
        row = connection.execute(
            """
            SELECT
                idempotency_key,
                operation_type,
                entity_id,
                result_snapshot_json,
                created_at
            FROM proposal_idempotent_operations
            WHERE idempotency_key = %s AND operation_type = %s
            """,
            (idempotency_key, operation_type.value),
        ).fetchone()
        if row is None:
            return None
        return IdempotentOperationRecord(
            idempotency_key=row["idempotency_key"],
            operation_type=OperationType(row["operation_type"]),
            entity_id=int(row["entity_id"]),
            result_snapshot=json.loads(row["result_snapshot_json"]),
            created_at=row["created_at"],
        )

    def _find_customer_by(self, column: str, value: Any) -> Optional[Customer]:
        query = f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE {column} = %s"
        with closing(self._connect()) as connection:
            row = connection.execute(query, (value,)).fetchone()
        if row is None:
            return None
        return Customer(
            customer_id=int(row["customer_id"]),
            name=row["name"],
            email=row["email"],
            document=row["document"],
            idempotency_key=row["idempotency_key"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="proposals")


def _to_proposal(row: Optional[dict]) -> Optional[Proposal]:
    if row is None:
        return None
    key = row["idempotency_key"]
    return Proposal(
        proposal_id=int(row["proposal_id"]),
        customer_id=int(row["customer_id"]),
        customer=CustomerSnapshot(
            name=row["customer_name"],
            email=row["customer_email"],
            document=row["customer_document"],
        ),
        value=Money(amount=row["value_amount"]),
        state=ProposalState(row["state"]),
        version=int(row["version"]),
        idempotency_key=IdempotencyKey(value=key) if key is not None else None,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        sent_at=row["sent_at"],
        responded_at=row["responded_at"],
    )


def _to_audit_record(row: dict) -> AuditRecord:
    return AuditRecord(
        audit_id=row["audit_id"],
        entity_type=row["entity_type"],
        entity_id=int(row["entity_id"]),
        event=AuditEvent(row["event"]),
        prior_state=json.loads(row["prior_state_json"]),
        new_state=json.loads(row["new_state_json"]),
        actor_id=row["actor_id"],
        origin_ip=row["origin_ip"],
        occurred_at=row["occurred_at"],
    )


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _json_dump(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


def _customer_conflict_message(exc: Exception, customer: Customer) -> str:
    # Constraint names follow Postgres defaults, e.g. customers_email_key.
    detail = str(exc)
    if "idempotency_key" in detail:
        return f"CUSTOMER_IDEMPOTENCY_KEY_TAKEN: {customer.idempotency_key}"
    if "document" in detail:
        return f"CUSTOMER_DOCUMENT_TAKEN: {customer.document}"
    return f"CUSTOMER_EMAIL_TAKEN: {customer.email}"
