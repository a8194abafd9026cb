from typing import Optional, Protocol

from src.core.journeys.models import DomainEvent
from src.core.tickets.models import TicketRecord


class TicketRepository(Protocol):
    def create_ticket(self, *, ticket: TicketRecord, events: list[DomainEvent]) -> None: ...

    def get_ticket(self, *, ticket_id: str) -> Optional[TicketRecord]: ...

    def list_active_tickets(self) -> list[TicketRecord]: ...

    def update_ticket(
        self, *, ticket: TicketRecord, expected_version: int, events: list[DomainEvent]
    ) -> None: ...

    def list_events(self, *, ticket_id: str) -> list[DomainEvent]: ...
