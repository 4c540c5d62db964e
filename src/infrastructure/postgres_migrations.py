import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")


@dataclass(frozen=True)
class SchemaMigration:
    namespace: str
    version: str
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()

    @property
    def stored_version(self) -> str:
        return f"{self.namespace}:{self.version}"

    def statements(self) -> list[str]:
        return [statement.strip() for statement in self.sql.split(";") if statement.strip()]


def load_schema_migrations(*, namespace: str) -> list[SchemaMigration]:
    """Read ``<version>_<name>.sql`` files for a namespace, ordered by file name."""
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.is_dir():
        raise RuntimeError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND: {namespace}")
    return [
        SchemaMigration(
            namespace=namespace,
            version=sql_path.stem.split("_", maxsplit=1)[0],
            sql=sql_path.read_text(encoding="utf-8"),
        )
        for sql_path in sorted(namespace_path.glob("*.sql"))
    ]


def apply_postgres_migrations(*, connection: Any, namespace: str) -> list[str]:
    """Apply pending migrations under a namespace-scoped advisory lock.

    Returns the versions applied by this call. A previously applied migration
    whose file content changed raises ``POSTGRES_MIGRATION_CHECKSUM_MISMATCH``.
    """
    lock_key = migration_lock_key(namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        applied = _apply_pending(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))
    return applied


def migration_lock_key(namespace: str) -> int:
    digest = hashlib.sha256(f"migrations:{namespace}".encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)


def _apply_pending(*, connection: Any, namespace: str) -> list[str]:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL
        )
        """
    )
    rows = connection.execute(
        "SELECT version, checksum FROM schema_migrations WHERE namespace = %s",
        (namespace,),
    ).fetchall()
    recorded = {str(row["version"]): str(row["checksum"]) for row in rows}

    applied: list[str] = []
    for migration in load_schema_migrations(namespace=namespace):
        checksum = recorded.get(migration.stored_version)
        if checksum is not None:
            if checksum != migration.checksum:
                raise RuntimeError(
                    f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH: {migration.stored_version}"
                )
            continue
        for statement in migration.statements():
            connection.execute(statement)
        connection.execute(
            """
            INSERT INTO schema_migrations (version, namespace, checksum, applied_at)
            VALUES (%s, %s, %s, %s)
            """,
            (
                migration.stored_version,
                namespace,
                migration.checksum,
                datetime.now(timezone.utc),
            ),
        )
        applied.append(migration.version)
    connection.commit()
    return applied
