from __future__ import annotations

import hashlib
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Literal

SqlDialect = Literal["postgres", "sqlite"]

MIGRATIONS_ROOT = Path(__file__).with_name("sql_migrations")

_PLACEHOLDERS: dict[str, str] = {"postgres": "%s", "sqlite": "?"}

_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version TEXT PRIMARY KEY,
    namespace TEXT NOT NULL,
    checksum TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""


@dataclass(frozen=True)
class SqlMigration:
    version: str
    sql_path: Path
    checksum: str


def load_migrations(*, namespace: str) -> list[SqlMigration]:
    """Migration files of ``namespace`` in version order (``NNNN_description.sql``)."""
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.exists():
        raise RuntimeError(f"SQL_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    return [
        SqlMigration(
            version=sql_path.stem.split("_", maxsplit=1)[0],
            sql_path=sql_path,
            checksum=hashlib.sha256(sql_path.read_bytes()).hexdigest(),
        )
        for sql_path in sorted(namespace_path.glob("*.sql"))
    ]


def applied_checksums(
    *, connection: Any, namespace: str, dialect: SqlDialect = "postgres"
) -> dict[str, str]:
    connection.execute(_LEDGER_DDL)
    rows = connection.execute(
        "SELECT version, checksum FROM schema_migrations "
        f"WHERE namespace = {_PLACEHOLDERS[dialect]} ORDER BY version ASC",
        (namespace,),
    ).fetchall()
    prefix = f"{namespace}:"
    checksums: dict[str, str] = {}
    for row in rows:
        version = str(row["version"])
        if version.startswith(prefix):
            version = version[len(prefix) :]
        checksums[version] = str(row["checksum"])
    return checksums


def pending_migrations(
    *, connection: Any, namespace: str, dialect: SqlDialect = "postgres"
) -> list[SqlMigration]:
    """Migrations not yet recorded in the ledger.

    An already applied file whose content changed is refused: migrations are
    forward-only, a fix ships as a new version.
    """
    applied = applied_checksums(connection=connection, namespace=namespace, dialect=dialect)
    pending = []
    for migration in load_migrations(namespace=namespace):
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            raise RuntimeError(f"SQL_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{migration.version}")
    return pending


def apply_sql_migrations(
    *, connection: Any, namespace: str, dialect: SqlDialect = "postgres"
) -> list[str]:
    """Apply pending migrations of ``namespace`` in one transaction.

    Postgres runners serialise on an advisory lock keyed by namespace; SQLite
    callers hold their own process lock. Returns the versions applied.
    """
    guard = _advisory_lock(connection, namespace) if dialect == "postgres" else nullcontext()
    with guard:
        try:
            applied = []
            for migration in pending_migrations(
                connection=connection, namespace=namespace, dialect=dialect
            ):
                _run_script(connection, migration.sql_path.read_text(encoding="utf-8"))
                _record(connection, namespace, migration, dialect)
                applied.append(migration.version)
            connection.commit()
        except Exception:
            connection.rollback()
            raise
    return applied


@contextmanager
def _advisory_lock(connection: Any, namespace: str) -> Iterator[None]:
    lock_key = _migration_lock_key(namespace=namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        yield
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))


def _run_script(connection: Any, sql: str) -> None:
    for statement in (part.strip() for part in sql.split(";")):
        if statement:
            connection.execute(statement)


def _record(connection: Any, namespace: str, migration: SqlMigration, dialect: SqlDialect) -> None:
    marks = ", ".join([_PLACEHOLDERS[dialect]] * 4)
    connection.execute(
        f"INSERT INTO schema_migrations (version, namespace, checksum, applied_at) "
        f"VALUES ({marks})",
        (
            f"{namespace}:{migration.version}",
            namespace,
            migration.checksum,
            datetime.now(timezone.utc).isoformat(),
        ),
    )


def _migration_lock_key(*, namespace: str) -> int:
    digest = hashlib.sha256(f"schema_migrations:{namespace}".encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)
