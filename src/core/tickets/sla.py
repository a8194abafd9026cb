"""Ticket SLA clocks.

A ticket carries two independent deadlines, first response (FRT) and resolution
(TTR), both measured from the ticket's creation time using the policy row of its
current priority. Changing priority re-derives both from ``created_at`` so the
clock is never silently re-based.
"""

import json
from datetime import datetime, timedelta
from typing import Optional

from src.core.journeys.errors import PolicyMissingError
from src.core.tickets.models import (
    EscalationLevel,
    SlaBand,
    SlaClock,
    TicketRecord,
    TicketSlaPolicyEntry,
    normalize_priority,
)

TicketSlaPolicy = dict[str, TicketSlaPolicyEntry]

DEFAULT_TICKET_SLA_POLICY: TicketSlaPolicy = {
    "baixa": TicketSlaPolicyEntry(frt_hours=24, ttr_hours=72),
    "media": TicketSlaPolicyEntry(frt_hours=8, ttr_hours=24),
    "alta": TicketSlaPolicyEntry(frt_hours=4, ttr_hours=8),
    "urgente": TicketSlaPolicyEntry(frt_hours=1, ttr_hours=4),
}

# upper bounds, in hours remaining, of each urgency band
SLA_BAND_THRESHOLDS: list[tuple[str, float]] = [
    ("critical", 2),
    ("warning", 8),
    ("caution", 24),
]

URGENT_BANDS = frozenset({"critical", "warning"})

ESCALATION_RANK: dict[str, int] = {"none": 0, "low": 1, "medium": 2, "high": 3, "critical": 4}


def parse_ticket_sla_policy(policy_json: Optional[str]) -> TicketSlaPolicy:
    """Parse ``TICKET_SLA_POLICY_JSON``.

    An empty value selects the default table. Malformed rows are dropped, so a
    priority without a valid row fails loudly with ``POLICY_MISSING`` when used.
    """
    normalized_json = (policy_json or "").strip()
    if not normalized_json:
        return dict(DEFAULT_TICKET_SLA_POLICY)
    try:
        raw = json.loads(normalized_json)
    except json.JSONDecodeError:
        return {}
    if not isinstance(raw, dict):
        return {}

    policy: TicketSlaPolicy = {}
    for priority, entry in raw.items():
        if not isinstance(priority, str) or not isinstance(entry, dict):
            continue
        try:
            parsed = TicketSlaPolicyEntry.model_validate(entry)
        except ValueError:
            continue
        policy[normalize_priority(priority)] = parsed
    return policy


def policy_entry(priority: str, policy: TicketSlaPolicy) -> TicketSlaPolicyEntry:
    entry = policy.get(normalize_priority(priority))
    if entry is None:
        raise PolicyMissingError(
            message=f"No SLA policy configured for priority {priority}.",
            details={"priority": priority, "configured": sorted(policy)},
        )
    return entry


def compute_ticket_deadlines(
    priority: str, created_at: datetime, policy: TicketSlaPolicy
) -> tuple[datetime, datetime]:
    entry = policy_entry(priority, policy)
    return (
        created_at + timedelta(hours=entry.frt_hours),
        created_at + timedelta(hours=entry.ttr_hours),
    )


def violated(due: Optional[datetime], now: datetime) -> bool:
    return due is not None and due < now


def reprioritize(ticket: TicketRecord, new_priority: str, policy: TicketSlaPolicy) -> TicketRecord:
    frt_due_at, ttr_due_at = compute_ticket_deadlines(new_priority, ticket.created_at, policy)
    return ticket.model_copy(
        update={
            "priority": normalize_priority(new_priority),
            "frt_due_at": frt_due_at,
            "ttr_due_at": ttr_due_at,
        }
    )


def classify_sla(
    due: datetime,
    now: datetime,
    *,
    clock: SlaClock,
    stopped_at: Optional[datetime] = None,
) -> SlaBand:
    """Band a clock by time remaining; a stopped clock is judged at its stop time."""
    reference = stopped_at or now
    hours_remaining = round((due - reference).total_seconds() / 3600, 2)
    if violated(due, reference):
        band = "overdue"
    elif stopped_at is not None:
        band = "met"
    else:
        band = "normal"
        for name, upper_bound in SLA_BAND_THRESHOLDS:
            if hours_remaining < upper_bound:
                band = name
                break
    return SlaBand(
        clock=clock,
        due_at=due,
        band=band,
        hours_remaining=hours_remaining,
        violated=band == "overdue",
    )


def ticket_violations(ticket: TicketRecord, now: datetime) -> list[tuple[SlaClock, datetime]]:
    """Clocks breached as of ``now``; a clock stopped late stays breached."""
    breaches: list[tuple[SlaClock, datetime]] = []
    if violated(ticket.frt_due_at, ticket.first_response_at or now):
        breaches.append(("first_response", ticket.frt_due_at))
    if violated(ticket.ttr_due_at, ticket.resolved_at or now):
        breaches.append(("resolution", ticket.ttr_due_at))
    return breaches


def escalation_level(first_response: SlaBand, resolution: SlaBand) -> EscalationLevel:
    """Escalate by the worst overdue clock: past 48h critical, past 24h high, else medium.

    Without a breach, a clock in an urgent band escalates to low.
    """
    bands = (first_response, resolution)
    overdue_hours = [-band.hours_remaining for band in bands if band.violated]
    if overdue_hours:
        worst = max(overdue_hours)
        if worst > 48:
            return "critical"
        if worst > 24:
            return "high"
        return "medium"
    if any(band.band in URGENT_BANDS for band in bands):
        return "low"
    return "none"
