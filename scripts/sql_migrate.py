import argparse
import os
import sqlite3
import sys
from contextlib import closing, contextmanager
from importlib.util import find_spec
from pathlib import Path
from typing import Any, Iterator

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only SQL migrations for the journey and ticket stores."
    )
    parser.add_argument(
        "--target",
        choices=["journeys", "tickets", "all"],
        default="all",
        help="Migration target namespace.",
    )
    parser.add_argument(
        "--journeys-location",
        default=os.getenv("JOURNEY_POSTGRES_DSN", "").strip()
        or os.getenv("JOURNEY_SQL_PATH", ".data/journeys.db"),
        help="PostgreSQL DSN or SQLite path of the journey store.",
    )
    parser.add_argument(
        "--tickets-location",
        default=os.getenv("TICKET_POSTGRES_DSN", "").strip()
        or os.getenv("TICKET_SQL_PATH", ".data/tickets.db"),
        help="PostgreSQL DSN or SQLite path of the ticket store.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List pending migrations without applying them.",
    )
    args = parser.parse_args()

    from src.infrastructure.sql_migrations import apply_sql_migrations, pending_migrations

    targets = _resolve_targets(args.target, args.journeys_location, args.tickets_location)
    for namespace, location in targets:
        if not location:
            raise RuntimeError(f"SQL_MIGRATION_LOCATION_REQUIRED:{namespace}")
        dialect = "postgres" if _is_postgres_dsn(location) else "sqlite"
        with _open(location, dialect) as connection:
            if args.dry_run:
                pending = pending_migrations(
                    connection=connection, namespace=namespace, dialect=dialect
                )
                versions = [migration.version for migration in pending]
                print(f"Pending migrations for namespace={namespace}: {_describe(versions)}")
                continue
            applied = apply_sql_migrations(
                connection=connection, namespace=namespace, dialect=dialect
            )
        print(f"Applied migrations for namespace={namespace}: {_describe(applied)}")
    return 0


@contextmanager
def _open(location: str, dialect: str) -> Iterator[Any]:
    if dialect == "postgres":
        if find_spec("psycopg") is None:
            raise RuntimeError("SQL_MIGRATION_DRIVER_MISSING")
        import psycopg
        from psycopg.rows import dict_row

        with psycopg.connect(location, row_factory=dict_row) as connection:
            yield connection
        return
    Path(location).parent.mkdir(parents=True, exist_ok=True)
    with closing(sqlite3.connect(location)) as connection:
        connection.row_factory = sqlite3.Row
        yield connection


def _describe(versions: list[str]) -> str:
    return ", ".join(versions) if versions else "none"


def _is_postgres_dsn(location: str) -> bool:
    return location.startswith(("postgres://", "postgresql://")) or "dbname=" in location


def _resolve_targets(
    target: str, journeys_location: str, tickets_location: str
) -> list[tuple[str, str]]:
    if target == "journeys":
        return [("journeys", journeys_location)]
    if target == "tickets":
        return [("tickets", tickets_location)]
    return [("journeys", journeys_location), ("tickets", tickets_location)]


if __name__ == "__main__":
    raise SystemExit(main())
