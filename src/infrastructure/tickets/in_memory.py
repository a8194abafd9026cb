from copy import deepcopy
from threading import Lock
from typing import Optional

from src.core.journeys.errors import ConcurrentModificationError
from src.core.journeys.models import DomainEvent
from src.core.tickets.models import TicketRecord
from src.core.tickets.repository import TicketRepository

ACTIVE_TICKET_STATUSES = frozenset({"aberto", "em_andamento"})


class InMemoryTicketRepository(TicketRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._tickets: dict[str, TicketRecord] = {}
        self._events: dict[str, list[DomainEvent]] = {}

    def create_ticket(self, *, ticket: TicketRecord, events: list[DomainEvent]) -> None:
        with self._lock:
            if ticket.ticket_id in self._tickets:
                raise ConcurrentModificationError(
                    details={"guard": "ticket", "entity_id": ticket.ticket_id}
                )
            self._tickets[ticket.ticket_id] = deepcopy(ticket)
            self._events[ticket.ticket_id] = [deepcopy(event) for event in events]

    def get_ticket(self, *, ticket_id: str) -> Optional[TicketRecord]:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            return deepcopy(ticket) if ticket is not None else None

    def list_active_tickets(self) -> list[TicketRecord]:
        with self._lock:
            rows = [
                ticket
                for ticket in self._tickets.values()
                if ticket.status in ACTIVE_TICKET_STATUSES
            ]
            rows.sort(key=lambda item: (item.created_at, item.ticket_id))
            return [deepcopy(row) for row in rows]

    def update_ticket(
        self, *, ticket: TicketRecord, expected_version: int, events: list[DomainEvent]
    ) -> None:
        with self._lock:
            stored = self._tickets.get(ticket.ticket_id)
            if stored is None or stored.version != expected_version:
                raise ConcurrentModificationError(
                    details={"guard": "ticket", "entity_id": ticket.ticket_id}
                )
            self._tickets[ticket.ticket_id] = deepcopy(ticket)
            self._events.setdefault(ticket.ticket_id, []).extend(
                deepcopy(event) for event in events
            )

    def list_events(self, *, ticket_id: str) -> list[DomainEvent]:
        with self._lock:
            return [deepcopy(event) for event in self._events.get(ticket_id, [])]
