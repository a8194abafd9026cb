import sqlite3
from contextlib import closing
from pathlib import Path
from threading import Lock

from src.infrastructure.journeys.sql import SqlJourneyRepository
from src.infrastructure.sql_migrations import apply_sql_migrations


class SqliteJourneyRepository(SqlJourneyRepository):
    _integrity_errors = (sqlite3.IntegrityError,)
    _transient_errors = (sqlite3.OperationalError,)

    def __init__(self, *, database_path: str) -> None:
        super().__init__()
        self._write_lock = Lock()
        self._database_path = database_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path, timeout=30)
        connection.row_factory = sqlite3.Row
        return connection

    def _init_db(self) -> None:
        Path(self._database_path).parent.mkdir(parents=True, exist_ok=True)
        with self._write_lock, closing(self._connect()) as connection:
            apply_sql_migrations(connection=connection, namespace="journeys", dialect="sqlite")
