import os
import warnings

from src.api.routers.runtime_utils import store_backend_name
from src.core.tickets.repository import TicketRepository
from src.core.tickets.sla import TicketSlaPolicy, parse_ticket_sla_policy
from src.infrastructure.tickets import (
    InMemoryTicketRepository,
    PostgresTicketRepository,
    SqliteTicketRepository,
)


def ticket_store_backend_name() -> str:
    backend = store_backend_name("TICKET_STORE_BACKEND")
    if os.getenv("TICKET_STORE_BACKEND", "").strip().upper() == "SQLITE":
        warnings.warn(
            "TICKET_STORE_BACKEND=SQLITE is deprecated; use SQL.",
            DeprecationWarning,
            stacklevel=2,
        )
    return backend


def ticket_sql_path() -> str:
    return os.getenv("TICKET_SQL_PATH", ".data/tickets.db")


def ticket_postgres_dsn() -> str:
    return os.getenv("TICKET_POSTGRES_DSN", "").strip()


def ticket_sla_policy() -> TicketSlaPolicy:
    return parse_ticket_sla_policy(os.getenv("TICKET_SLA_POLICY_JSON"))


def build_ticket_repository() -> TicketRepository:
    backend = ticket_store_backend_name()
    if backend == "SQL":
        return SqliteTicketRepository(database_path=ticket_sql_path())
    if backend == "POSTGRES":
        dsn = ticket_postgres_dsn()
        if not dsn:
            raise RuntimeError("TICKET_POSTGRES_DSN_REQUIRED")
        try:
            return PostgresTicketRepository(dsn=dsn)
        except RuntimeError:
            raise
        except Exception as exc:
            raise RuntimeError("TICKET_POSTGRES_CONNECTION_FAILED") from exc
    return InMemoryTicketRepository()
