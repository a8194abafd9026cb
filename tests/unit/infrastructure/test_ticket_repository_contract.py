from datetime import timedelta

import pytest

from src.core.journeys.errors import ConcurrentModificationError
from src.core.journeys.events import new_event
from src.core.tickets.models import TicketRecord
from src.infrastructure.tickets import InMemoryTicketRepository, SqliteTicketRepository
from tests.factories import T0


@pytest.fixture(params=["in_memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "in_memory":
        return InMemoryTicketRepository()
    return SqliteTicketRepository(database_path=str(tmp_path / "tickets.db"))


def _ticket(ticket_id="tk_001", *, created_at=T0, **overrides):
    values = {
        "ticket_id": ticket_id,
        "subject": "Dúvida sobre audiência",
        "requester_ref": "client_42",
        "journey_id": "ji_001",
        "priority": "media",
        "status": "aberto",
        "created_by": "oab_123",
        "created_at": created_at,
        "frt_due_at": created_at + timedelta(hours=8),
        "ttr_due_at": created_at + timedelta(hours=24),
    }
    values.update(overrides)
    return TicketRecord(**values)


def _event(event_type, ticket_id="tk_001"):
    return new_event(
        event_type,
        entity_type="ticket",
        entity_id=ticket_id,
        journey_id="ji_001",
        actor_ref="oab_123",
        occurred_at=T0,
        payload={"priority": "media"},
    )


def test_ticket_roundtrip(repository):
    ticket = _ticket(description="Cliente pergunta sobre a data da audiência.")
    repository.create_ticket(ticket=ticket, events=[_event("TicketOpened")])

    assert repository.get_ticket(ticket_id="tk_001") == ticket
    assert repository.get_ticket(ticket_id="tk_missing") is None
    (event,) = repository.list_events(ticket_id="tk_001")
    assert event.event_type == "TicketOpened"
    assert event.journey_id == "ji_001"
    assert event.payload == {"priority": "media"}


def test_duplicate_ticket_conflicts(repository):
    repository.create_ticket(ticket=_ticket(), events=[])

    with pytest.raises(ConcurrentModificationError) as exc:
        repository.create_ticket(ticket=_ticket(), events=[])
    assert exc.value.guard == "ticket"


def test_update_requires_expected_version(repository):
    repository.create_ticket(ticket=_ticket(), events=[_event("TicketOpened")])
    responded = _ticket(status="em_andamento", first_response_at=T0, version=2)
    repository.update_ticket(
        ticket=responded, expected_version=1, events=[_event("TicketFirstResponded")]
    )

    with pytest.raises(ConcurrentModificationError):
        repository.update_ticket(
            ticket=_ticket(priority="alta", version=2),
            expected_version=1,
            events=[_event("TicketReprioritized")],
        )

    assert repository.get_ticket(ticket_id="tk_001") == responded
    assert [event.event_type for event in repository.list_events(ticket_id="tk_001")] == [
        "TicketOpened",
        "TicketFirstResponded",
    ]


def test_active_tickets_exclude_resolved_and_closed(repository):
    later = T0 + timedelta(hours=2)
    repository.create_ticket(ticket=_ticket("tk_003", created_at=later), events=[])
    repository.create_ticket(ticket=_ticket("tk_001"), events=[])
    repository.create_ticket(
        ticket=_ticket("tk_002", status="em_andamento", first_response_at=T0), events=[]
    )
    repository.create_ticket(
        ticket=_ticket("tk_004", status="resolvido", first_response_at=T0, resolved_at=T0),
        events=[],
    )
    repository.create_ticket(
        ticket=_ticket(
            "tk_005", status="fechado", first_response_at=T0, resolved_at=T0, closed_at=T0
        ),
        events=[],
    )

    active = repository.list_active_tickets()

    assert [ticket.ticket_id for ticket in active] == ["tk_001", "tk_002", "tk_003"]
