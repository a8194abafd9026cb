from src.infrastructure.tickets.in_memory import InMemoryTicketRepository
from src.infrastructure.tickets.postgres import PostgresTicketRepository
from src.infrastructure.tickets.sqlite import SqliteTicketRepository

__all__ = [
    "InMemoryTicketRepository",
    "PostgresTicketRepository",
    "SqliteTicketRepository",
]
