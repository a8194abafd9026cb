from src.infrastructure.journeys.in_memory import InMemoryJourneyRepository
from src.infrastructure.journeys.postgres import PostgresJourneyRepository
from src.infrastructure.journeys.sqlite import SqliteJourneyRepository

__all__ = [
    "InMemoryJourneyRepository",
    "PostgresJourneyRepository",
    "SqliteJourneyRepository",
]
