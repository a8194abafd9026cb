from contextlib import closing
from importlib.util import find_spec
from typing import Any

from src.infrastructure.journeys.sql import SqlJourneyRepository
from src.infrastructure.sql_migrations import apply_sql_migrations


class PostgresJourneyRepository(SqlJourneyRepository):
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("JOURNEY_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("JOURNEY_POSTGRES_DRIVER_MISSING")
        super().__init__()
        psycopg, _ = _import_psycopg()
        self._integrity_errors = (psycopg.IntegrityError,)
        self._transient_errors = (psycopg.OperationalError,)
        self._dsn = dsn
        self._init_db()

    def _sql(self, query: str) -> str:
        return query.replace("?", "%s")

    def _connect(self) -> Any:
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_sql_migrations(connection=connection, namespace="journeys", dialect="postgres")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row
