from datetime import timedelta

import pytest

from src.core.journeys.errors import (
    InvalidTransitionError,
    PolicyMissingError,
    TicketNotFoundError,
)
from src.core.tickets.models import TicketOpenRequest, TicketPriorityChangeRequest
from src.core.tickets.service import TicketSlaService
from src.core.tickets.sla import parse_ticket_sla_policy
from src.infrastructure.tickets import InMemoryTicketRepository
from tests.factories import T0


def _open(service, priority="urgente", *, now=T0, subject="Dúvida sobre audiência"):
    return service.open_ticket(
        payload=TicketOpenRequest(
            subject=subject,
            requester_ref="client_42",
            priority=priority,
            actor_ref="oab_123",
        ),
        now=now,
    )


def test_open_ticket_sets_both_deadlines_and_emits_event(ticket_service, published):
    ticket = _open(ticket_service)

    assert ticket.status == "aberto"
    assert ticket.frt_due_at == T0 + timedelta(hours=1)
    assert ticket.ttr_due_at == T0 + timedelta(hours=4)
    events = ticket_service.list_events(ticket_id=ticket.ticket_id)
    assert [event.event_type for event in events] == ["TicketOpened"]
    assert events[0].entity_type == "ticket"
    assert [event.event_type for event in published] == ["TicketOpened"]


def test_normal_priority_is_an_alias_of_media(ticket_service):
    ticket = _open(ticket_service, "normal")
    assert ticket.priority == "media"
    assert ticket.frt_due_at == T0 + timedelta(hours=8)


def test_priority_change_rederives_deadlines_from_creation(ticket_service):
    ticket = _open(ticket_service, "urgente")

    changed = ticket_service.change_priority(
        ticket_id=ticket.ticket_id,
        payload=TicketPriorityChangeRequest(priority="baixa", actor_ref="oab_123"),
        now=T0 + timedelta(minutes=30),
    )

    assert changed.priority == "baixa"
    assert changed.frt_due_at == T0 + timedelta(hours=24)
    assert changed.ttr_due_at == T0 + timedelta(hours=72)
    assert changed.version == ticket.version + 1
    events = ticket_service.list_events(ticket_id=ticket.ticket_id)
    assert events[-1].event_type == "TicketReprioritized"
    assert events[-1].payload["from_priority"] == "urgente"


def test_first_response_then_resolve_then_close(ticket_service):
    ticket = _open(ticket_service)

    responded = ticket_service.record_first_response(
        ticket_id=ticket.ticket_id, actor_ref="oab_123", now=T0 + timedelta(minutes=20)
    )
    assert responded.status == "em_andamento"
    with pytest.raises(InvalidTransitionError) as exc:
        ticket_service.record_first_response(ticket_id=ticket.ticket_id, actor_ref="oab_123")
    assert str(exc.value) == "FIRST_RESPONSE_ALREADY_RECORDED"

    resolved = ticket_service.resolve_ticket(
        ticket_id=ticket.ticket_id, actor_ref="oab_123", now=T0 + timedelta(hours=2)
    )
    assert resolved.status == "resolvido"
    assert resolved.first_response_at == T0 + timedelta(minutes=20)

    closed = ticket_service.close_ticket(
        ticket_id=ticket.ticket_id, actor_ref="oab_123", now=T0 + timedelta(hours=3)
    )
    assert closed.status == "fechado"
    assert closed.closed_at == T0 + timedelta(hours=3)
    events = ticket_service.list_events(ticket_id=ticket.ticket_id)
    assert [event.event_type for event in events] == [
        "TicketOpened",
        "TicketFirstResponded",
        "TicketResolved",
    ]


def test_resolving_unanswered_ticket_also_stops_first_response_clock(ticket_service):
    ticket = _open(ticket_service)
    moment = T0 + timedelta(minutes=40)

    resolved = ticket_service.resolve_ticket(
        ticket_id=ticket.ticket_id, actor_ref="oab_123", now=moment
    )

    assert resolved.first_response_at == moment
    assert resolved.resolved_at == moment


def test_invalid_ticket_transitions(ticket_service):
    ticket = _open(ticket_service)

    with pytest.raises(InvalidTransitionError) as exc:
        ticket_service.close_ticket(ticket_id=ticket.ticket_id, actor_ref="oab_123")
    assert exc.value.details["current_status"] == "aberto"

    ticket_service.resolve_ticket(ticket_id=ticket.ticket_id, actor_ref="oab_123", now=T0)
    with pytest.raises(InvalidTransitionError) as exc:
        ticket_service.change_priority(
            ticket_id=ticket.ticket_id,
            payload=TicketPriorityChangeRequest(priority="alta", actor_ref="oab_123"),
        )
    assert str(exc.value) == "TICKET_NOT_OPEN"


def test_unknown_ticket_raises_not_found(ticket_service):
    with pytest.raises(TicketNotFoundError):
        ticket_service.get_ticket(ticket_id="tk_missing")


def test_sla_view_bands_both_clocks(ticket_service):
    ticket = _open(ticket_service, "alta")

    view = ticket_service.get_ticket_sla(
        ticket_id=ticket.ticket_id, now=T0 + timedelta(hours=5)
    )

    assert view.first_response.band == "overdue"
    assert view.resolution.band == "warning"
    assert view.resolution.hours_remaining == 3
    assert view.escalation_level == "medium"


def test_violations_list_open_tickets_only(ticket_service):
    late = _open(ticket_service, "urgente", subject="Urgente")
    relaxed = _open(ticket_service, "baixa", subject="Sem pressa")
    done = _open(ticket_service, "urgente", subject="Resolvido")
    ticket_service.resolve_ticket(
        ticket_id=done.ticket_id, actor_ref="oab_123", now=T0 + timedelta(minutes=10)
    )

    violations = ticket_service.find_violations(now=T0 + timedelta(hours=5))

    assert [(item.ticket_id, item.clock) for item in violations.items] == [
        (late.ticket_id, "first_response"),
        (late.ticket_id, "resolution"),
    ]
    assert violations.items[0].overdue_by_hours == 4
    assert violations.items[1].overdue_by_hours == 1
    assert relaxed.ticket_id not in {item.ticket_id for item in violations.items}


def test_violations_list_the_most_escalated_tickets_first(ticket_service):
    mild = _open(ticket_service, "baixa", now=T0 - timedelta(hours=72), subject="Atrasado pouco")
    ticket_service.record_first_response(
        ticket_id=mild.ticket_id, actor_ref="oab_123", now=T0 - timedelta(hours=47)
    )
    severe = _open(ticket_service, "urgente", now=T0 - timedelta(hours=30), subject="Esquecido")

    violations = ticket_service.find_violations(now=T0 + timedelta(hours=5))

    assert [(item.ticket_id, item.clock, item.escalation_level) for item in violations.items] == [
        (severe.ticket_id, "first_response", "high"),
        (severe.ticket_id, "resolution", "high"),
        (mild.ticket_id, "first_response", "medium"),
        (mild.ticket_id, "resolution", "medium"),
    ]


def test_late_first_response_is_measured_at_response_time(ticket_service):
    ticket = _open(ticket_service, "urgente")
    ticket_service.record_first_response(
        ticket_id=ticket.ticket_id, actor_ref="oab_123", now=T0 + timedelta(hours=2)
    )

    violations = ticket_service.find_violations(now=T0 + timedelta(hours=3))

    assert [item.clock for item in violations.items] == ["first_response"]
    assert violations.items[0].overdue_by_hours == 1


def test_sweep_notifies_ticket_creator_per_violation(ticket_service, sink):
    ticket = _open(ticket_service, "urgente")

    summary = ticket_service.sweep_violations(now=T0 + timedelta(hours=5))

    assert summary.violations == 2
    assert summary.notifications_sent == 2
    subjects = [item.subject for item in sink.for_recipient("oab_123")]
    assert subjects == ["Ticket SLA violated: Dúvida sobre audiência"] * 2
    assert all(item.related_entity_ref == ticket.ticket_id for item in sink.sent)


def test_service_without_policy_row_refuses_to_open_ticket():
    service = TicketSlaService(
        repository=InMemoryTicketRepository(),
        policy=parse_ticket_sla_policy('{"baixa": {"frt_hours": 24, "ttr_hours": 72}}'),
    )

    with pytest.raises(PolicyMissingError):
        _open(service, "urgente")
    assert service.get_policy().priorities.keys() == {"baixa"}
