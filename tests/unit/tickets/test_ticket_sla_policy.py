from datetime import timedelta

import pytest

from src.core.journeys.errors import PolicyMissingError
from src.core.tickets.models import TicketRecord, TicketSlaPolicyEntry
from src.core.tickets.sla import (
    DEFAULT_TICKET_SLA_POLICY,
    classify_sla,
    compute_ticket_deadlines,
    escalation_level,
    parse_ticket_sla_policy,
    reprioritize,
    ticket_violations,
)
from tests.factories import T0


def _ticket(priority="urgente", **overrides):
    frt_due_at, ttr_due_at = compute_ticket_deadlines(priority, T0, DEFAULT_TICKET_SLA_POLICY)
    values = {
        "ticket_id": "tk_001",
        "subject": "Dúvida sobre audiência",
        "requester_ref": "client_42",
        "priority": priority,
        "status": "aberto",
        "created_by": "oab_123",
        "created_at": T0,
        "frt_due_at": frt_due_at,
        "ttr_due_at": ttr_due_at,
    }
    values.update(overrides)
    return TicketRecord(**values)


@pytest.mark.parametrize(
    "priority, frt_hours, ttr_hours",
    [("baixa", 24, 72), ("media", 8, 24), ("normal", 8, 24), ("alta", 4, 8), ("urgente", 1, 4)],
)
def test_default_policy_deadlines_start_at_creation(priority, frt_hours, ttr_hours):
    frt_due_at, ttr_due_at = compute_ticket_deadlines(priority, T0, DEFAULT_TICKET_SLA_POLICY)
    assert frt_due_at == T0 + timedelta(hours=frt_hours)
    assert ttr_due_at == T0 + timedelta(hours=ttr_hours)


def test_reprioritize_rederives_deadlines_from_creation_time():
    ticket = _ticket("urgente")

    lowered = reprioritize(ticket, "baixa", DEFAULT_TICKET_SLA_POLICY)

    assert lowered.priority == "baixa"
    assert lowered.frt_due_at == T0 + timedelta(hours=24)
    assert lowered.ttr_due_at == T0 + timedelta(hours=72)
    assert lowered.created_at == T0


def test_missing_policy_row_fails_loudly():
    policy = {"baixa": TicketSlaPolicyEntry(frt_hours=24, ttr_hours=72)}
    with pytest.raises(PolicyMissingError) as exc:
        compute_ticket_deadlines("urgente", T0, policy)
    assert exc.value.details == {"priority": "urgente", "configured": ["baixa"]}


def test_parse_policy_defaults_aliases_and_drops_malformed_rows():
    assert parse_ticket_sla_policy(None) == DEFAULT_TICKET_SLA_POLICY
    assert parse_ticket_sla_policy("  ") == DEFAULT_TICKET_SLA_POLICY
    assert parse_ticket_sla_policy("{not json") == {}
    assert parse_ticket_sla_policy("[1, 2]") == {}

    parsed = parse_ticket_sla_policy(
        '{"Normal": {"frt_hours": 6, "ttr_hours": 12},'
        ' "alta": {"frt_hours": -1, "ttr_hours": 8},'
        ' "urgente": "fast"}'
    )
    assert parsed == {"media": TicketSlaPolicyEntry(frt_hours=6, ttr_hours=12)}


@pytest.mark.parametrize(
    "hours_before_due, band",
    [
        (30, "normal"),
        (24, "normal"),
        (12, "caution"),
        (5, "warning"),
        (1, "critical"),
        (0, "critical"),
    ],
)
def test_classify_sla_bands_by_time_remaining(hours_before_due, band):
    due = T0 + timedelta(hours=hours_before_due)

    result = classify_sla(due, T0, clock="resolution")

    assert result.band == band
    assert result.violated is False
    assert result.hours_remaining == hours_before_due


def test_classify_sla_overdue_and_stopped_clocks():
    due = T0 + timedelta(hours=1)

    overdue = classify_sla(due, T0 + timedelta(hours=3), clock="first_response")
    assert overdue.band == "overdue"
    assert overdue.violated is True
    assert overdue.hours_remaining == -2

    met = classify_sla(
        due, T0 + timedelta(hours=3), clock="first_response", stopped_at=T0 + timedelta(minutes=30)
    )
    assert met.band == "met"
    assert met.violated is False

    late = classify_sla(
        due, T0 + timedelta(hours=3), clock="first_response", stopped_at=T0 + timedelta(hours=2)
    )
    assert late.band == "overdue"


def test_ticket_violations_keep_late_responses_breached():
    assert ticket_violations(_ticket(), T0 + timedelta(minutes=30)) == []
    assert ticket_violations(_ticket(), T0 + timedelta(hours=2)) == [
        ("first_response", T0 + timedelta(hours=1))
    ]

    answered_late = _ticket(status="em_andamento", first_response_at=T0 + timedelta(hours=2))
    assert ticket_violations(answered_late, T0 + timedelta(hours=5)) == [
        ("first_response", T0 + timedelta(hours=1)),
        ("resolution", T0 + timedelta(hours=4)),
    ]

    answered_on_time = _ticket(status="em_andamento", first_response_at=T0)
    assert ticket_violations(answered_on_time, T0 + timedelta(hours=3)) == []


def _band(hours_before_due, clock="resolution"):
    return classify_sla(T0 + timedelta(hours=hours_before_due), T0, clock=clock)


@pytest.mark.parametrize(
    "hours_overdue, level",
    [
        (1, "medium"),
        (24, "medium"),
        (24.5, "high"),
        (48, "high"),
        (48.5, "critical"),
    ],
)
def test_escalation_follows_the_worst_overdue_clock(hours_overdue, level):
    first_response = _band(-hours_overdue, clock="first_response")

    assert escalation_level(first_response, _band(30)) == level
    assert escalation_level(_band(-0.5, clock="first_response"), _band(-hours_overdue)) == level


@pytest.mark.parametrize(
    "hours_before_due, level",
    [(1, "low"), (5, "low"), (12, "none"), (30, "none")],
)
def test_escalation_without_a_breach_only_flags_urgent_clocks(hours_before_due, level):
    assert escalation_level(_band(30, clock="first_response"), _band(hours_before_due)) == level


def test_met_clocks_do_not_escalate():
    met = classify_sla(
        T0 + timedelta(hours=1),
        T0 + timedelta(hours=3),
        clock="first_response",
        stopped_at=T0 + timedelta(minutes=30),
    )

    assert escalation_level(met, _band(30)) == "none"
