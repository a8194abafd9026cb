import sqlite3
from contextlib import closing
from pathlib import Path

import pytest

import src.infrastructure.sql_migrations as migrations_module
from src.infrastructure.sql_migrations import (
    SqlMigration,
    _migration_lock_key,
    apply_sql_migrations,
    load_migrations,
    pending_migrations,
)


class _FakeCursor:
    def __init__(self, rows=None):
        self._rows = rows or []

    def fetchall(self):
        return list(self._rows)


class _FakeConnection:
    def __init__(self):
        self.schema_migrations: dict[tuple[str, str], str] = {}
        self.applied_statements: list[str] = []
        self.commit_count = 0
        self.rollback_count = 0
        self.lock_calls: list[int] = []
        self.unlock_calls: list[int] = []

    def execute(self, query, args=None):
        sql = " ".join(str(query).split())
        if sql == "SELECT pg_advisory_lock(%s::bigint)":
            self.lock_calls.append(int(args[0]))
            return _FakeCursor()
        if sql == "SELECT pg_advisory_unlock(%s::bigint)":
            self.unlock_calls.append(int(args[0]))
            return _FakeCursor()
        if sql.startswith("CREATE TABLE IF NOT EXISTS schema_migrations"):
            return _FakeCursor()
        if "FROM schema_migrations" in sql:
            rows = [
                {"version": version, "checksum": checksum}
                for (namespace, version), checksum in self.schema_migrations.items()
                if namespace == args[0]
            ]
            return _FakeCursor(rows=sorted(rows, key=lambda row: row["version"]))
        if "INSERT INTO schema_migrations" in sql:
            self.schema_migrations[(args[1], args[0])] = args[2]
            return _FakeCursor()
        self.applied_statements.append(sql)
        return _FakeCursor()

    def commit(self):
        self.commit_count += 1

    def rollback(self):
        self.rollback_count += 1


@pytest.mark.parametrize(
    ("namespace", "versions"),
    [("journeys", ["0001", "0002"]), ("tickets", ["0001"])],
)
def test_every_namespace_ships_migrations(namespace, versions):
    migrations = load_migrations(namespace=namespace)
    assert [migration.version for migration in migrations] == versions


def test_unknown_namespace_fails():
    with pytest.raises(RuntimeError) as exc:
        load_migrations(namespace="billing")
    assert str(exc.value) == "SQL_MIGRATIONS_NAMESPACE_NOT_FOUND:billing"


def test_postgres_migrations_are_forward_only_and_locked():
    connection = _FakeConnection()

    apply_sql_migrations(connection=connection, namespace="journeys", dialect="postgres")
    first_count = len(connection.applied_statements)
    assert first_count > 0
    assert ("journeys", "journeys:0002") in connection.schema_migrations
    assert connection.lock_calls == [_migration_lock_key(namespace="journeys")]
    assert connection.unlock_calls == [_migration_lock_key(namespace="journeys")]

    apply_sql_migrations(connection=connection, namespace="journeys", dialect="postgres")
    assert len(connection.applied_statements) == first_count
    assert connection.commit_count == 2


def test_checksum_mismatch_is_rejected_and_rolled_back(monkeypatch, tmp_path: Path):
    sql_path = tmp_path / "0001_sample.sql"
    sql_path.write_text("CREATE TABLE IF NOT EXISTS sample (id TEXT PRIMARY KEY);")
    monkeypatch.setattr(
        migrations_module,
        "load_migrations",
        lambda *, namespace: [SqlMigration(version="0001", sql_path=sql_path, checksum="new")],
    )
    connection = _FakeConnection()
    connection.schema_migrations[("journeys", "journeys:0001")] = "old"

    with pytest.raises(RuntimeError) as exc:
        apply_sql_migrations(connection=connection, namespace="journeys", dialect="postgres")

    assert str(exc.value) == "SQL_MIGRATION_CHECKSUM_MISMATCH:journeys:0001"
    assert connection.rollback_count == 1
    assert connection.unlock_calls == [_migration_lock_key(namespace="journeys")]


def test_sqlite_migrations_create_schema_once(tmp_path: Path):
    database_path = tmp_path / "engine.db"
    with closing(sqlite3.connect(database_path)) as connection:
        connection.row_factory = sqlite3.Row
        apply_sql_migrations(connection=connection, namespace="journeys", dialect="sqlite")
        apply_sql_migrations(connection=connection, namespace="tickets", dialect="sqlite")
        apply_sql_migrations(connection=connection, namespace="journeys", dialect="sqlite")

        tables = {
            row["name"]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        versions = [
            row["version"]
            for row in connection.execute("SELECT version FROM schema_migrations ORDER BY version")
        ]

    assert {"journey_instances", "journey_events", "tickets", "ticket_events"} <= tables
    assert versions == ["journeys:0001", "journeys:0002", "tickets:0001"]


def test_pending_migrations_shrink_after_apply(tmp_path: Path):
    with closing(sqlite3.connect(tmp_path / "tickets.db")) as connection:
        connection.row_factory = sqlite3.Row
        before = pending_migrations(connection=connection, namespace="tickets", dialect="sqlite")
        applied = apply_sql_migrations(
            connection=connection, namespace="tickets", dialect="sqlite"
        )
        after = pending_migrations(connection=connection, namespace="tickets", dialect="sqlite")

    assert [migration.version for migration in before] == ["0001"]
    assert applied == ["0001"]
    assert after == []
