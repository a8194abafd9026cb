import os
import warnings

from src.api.routers.runtime_utils import env_non_negative_int, store_backend_name
from src.core.journeys.repository import JourneyRepository
from src.infrastructure.journeys import (
    InMemoryJourneyRepository,
    PostgresJourneyRepository,
    SqliteJourneyRepository,
)


def journey_store_backend_name() -> str:
    backend = store_backend_name("JOURNEY_STORE_BACKEND")
    if os.getenv("JOURNEY_STORE_BACKEND", "").strip().upper() == "SQLITE":
        warnings.warn(
            "JOURNEY_STORE_BACKEND=SQLITE is deprecated; use SQL.",
            DeprecationWarning,
            stacklevel=2,
        )
    return backend


def journey_sql_path() -> str:
    return os.getenv("JOURNEY_SQL_PATH", ".data/journeys.db")


def journey_postgres_dsn() -> str:
    return os.getenv("JOURNEY_POSTGRES_DSN", "").strip()


def journey_max_conflict_retries() -> int:
    return env_non_negative_int("JOURNEY_MAX_CONFLICT_RETRIES", 3)


def journey_read_retry_attempts() -> int:
    return env_non_negative_int("JOURNEY_READ_RETRY_ATTEMPTS", 2)


def build_repository() -> JourneyRepository:
    backend = journey_store_backend_name()
    if backend == "SQL":
        return SqliteJourneyRepository(database_path=journey_sql_path())
    if backend == "POSTGRES":
        dsn = journey_postgres_dsn()
        if not dsn:
            raise RuntimeError("JOURNEY_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresJourneyRepository(dsn=dsn)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError("JOURNEY_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryJourneyRepository()
