import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from src.core.journeys.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    TicketNotFoundError,
)
from src.core.journeys.events import ChangeNotifier, NotificationSink, new_event
from src.core.journeys.ids import new_id
from src.core.journeys.models import DomainEvent
from src.core.tickets.models import (
    TicketOpenRequest,
    TicketPriorityChangeRequest,
    TicketRecord,
    TicketSlaPolicyResponse,
    TicketSlaView,
    TicketStatus,
    TicketSweepResponse,
    TicketViolation,
    TicketViolationsResponse,
)
from src.core.tickets.repository import TicketRepository
from src.core.tickets.sla import (
    TicketSlaPolicy,
    ESCALATION_RANK,
    classify_sla,
    compute_ticket_deadlines,
    escalation_level,
    reprioritize,
    ticket_violations,
)

logger = logging.getLogger(__name__)

TICKET_TRANSITIONS: dict[tuple[TicketStatus, str], TicketStatus] = {
    ("aberto", "first_response"): "em_andamento",
    ("aberto", "resolve"): "resolvido",
    ("em_andamento", "resolve"): "resolvido",
    ("resolvido", "close"): "fechado",
}

OPEN_TICKET_STATUSES = frozenset({"aberto", "em_andamento"})


class TicketSlaService:
    def __init__(
        self,
        *,
        repository: TicketRepository,
        policy: TicketSlaPolicy,
        notifier: Optional[ChangeNotifier] = None,
        notification_sink: Optional[NotificationSink] = None,
        max_conflict_retries: int = 3,
    ) -> None:
        self._repository = repository
        self._policy = policy
        self._notifier = notifier
        self._notification_sink = notification_sink
        self._max_conflict_retries = max(0, max_conflict_retries)

    def get_policy(self) -> TicketSlaPolicyResponse:
        return TicketSlaPolicyResponse(priorities=dict(self._policy))

    def open_ticket(
        self, *, payload: TicketOpenRequest, now: Optional[datetime] = None
    ) -> TicketRecord:
        created_at = now or _utc_now()
        frt_due_at, ttr_due_at = compute_ticket_deadlines(
            payload.priority, created_at, self._policy
        )
        ticket = TicketRecord(
            ticket_id=new_id("tk"),
            subject=payload.subject,
            description=payload.description,
            requester_ref=payload.requester_ref,
            journey_id=payload.journey_id,
            priority=payload.priority,
            status="aberto",
            created_by=payload.actor_ref,
            created_at=created_at,
            frt_due_at=frt_due_at,
            ttr_due_at=ttr_due_at,
        )
        event = self._event(
            "TicketOpened",
            ticket,
            actor_ref=payload.actor_ref,
            now=created_at,
            payload={"priority": ticket.priority},
        )
        self._repository.create_ticket(ticket=ticket, events=[event])
        self._after_commit(ticket, [event])
        return ticket

    def get_ticket(self, *, ticket_id: str) -> TicketRecord:
        return self._load(ticket_id)

    def list_events(self, *, ticket_id: str) -> list[DomainEvent]:
        self._load(ticket_id)
        return self._repository.list_events(ticket_id=ticket_id)

    def get_ticket_sla(self, *, ticket_id: str, now: Optional[datetime] = None) -> TicketSlaView:
        return _sla_view(self._load(ticket_id), now or _utc_now())

    def change_priority(
        self,
        *,
        ticket_id: str,
        payload: TicketPriorityChangeRequest,
        now: Optional[datetime] = None,
    ) -> TicketRecord:
        moment = now or _utc_now()

        def attempt() -> TicketRecord:
            ticket = self._load(ticket_id)
            if ticket.status not in OPEN_TICKET_STATUSES:
                raise InvalidTransitionError(
                    "TICKET_NOT_OPEN",
                    details={
                        "ticket_id": ticket_id,
                        "current_status": ticket.status,
                        "attempted": "change_priority",
                    },
                )
            updated = reprioritize(ticket, payload.priority, self._policy)
            event = self._event(
                "TicketReprioritized",
                updated,
                actor_ref=payload.actor_ref,
                now=moment,
                payload={
                    "from_priority": ticket.priority,
                    "to_priority": updated.priority,
                    "frt_due_at": updated.frt_due_at.isoformat(),
                    "ttr_due_at": updated.ttr_due_at.isoformat(),
                },
            )
            committed = self._save(ticket, updated, [event])
            logger.info(
                "ticket.reprioritized",
                extra={
                    "extra_fields": {
                        "ticket_id": ticket_id,
                        "from_priority": ticket.priority,
                        "to_priority": updated.priority,
                    }
                },
            )
            return committed

        return self._mutate("change_priority", attempt)

    def record_first_response(
        self, *, ticket_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> TicketRecord:
        moment = now or _utc_now()

        def attempt() -> TicketRecord:
            ticket = self._load(ticket_id)
            if ticket.first_response_at is not None:
                raise InvalidTransitionError(
                    "FIRST_RESPONSE_ALREADY_RECORDED",
                    details={"ticket_id": ticket_id, "current_status": ticket.status},
                )
            status = self._transition(ticket, "first_response")
            updated = ticket.model_copy(update={"status": status, "first_response_at": moment})
            event = self._event(
                "TicketFirstResponded",
                updated,
                actor_ref=actor_ref,
                now=moment,
                payload={"within_sla": moment <= ticket.frt_due_at},
            )
            return self._save(ticket, updated, [event])

        return self._mutate("record_first_response", attempt)

    def resolve_ticket(
        self, *, ticket_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> TicketRecord:
        moment = now or _utc_now()

        def attempt() -> TicketRecord:
            ticket = self._load(ticket_id)
            status = self._transition(ticket, "resolve")
            updated = ticket.model_copy(
                update={
                    "status": status,
                    "first_response_at": ticket.first_response_at or moment,
                    "resolved_at": moment,
                }
            )
            event = self._event(
                "TicketResolved",
                updated,
                actor_ref=actor_ref,
                now=moment,
                payload={"within_sla": moment <= ticket.ttr_due_at},
            )
            return self._save(ticket, updated, [event])

        return self._mutate("resolve_ticket", attempt)

    def close_ticket(
        self, *, ticket_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> TicketRecord:
        moment = now or _utc_now()

        def attempt() -> TicketRecord:
            ticket = self._load(ticket_id)
            status = self._transition(ticket, "close")
            updated = ticket.model_copy(update={"status": status, "closed_at": moment})
            return self._save(ticket, updated, [])

        return self._mutate("close_ticket", attempt)

    def find_violations(self, *, now: Optional[datetime] = None) -> TicketViolationsResponse:
        as_of = now or _utc_now()
        items = []
        for ticket in self._repository.list_active_tickets():
            level = _sla_view(ticket, as_of).escalation_level
            for clock, due_at in ticket_violations(ticket, as_of):
                stopped_at = (
                    ticket.first_response_at if clock == "first_response" else ticket.resolved_at
                )
                items.append(
                    TicketViolation(
                        ticket_id=ticket.ticket_id,
                        clock=clock,
                        priority=ticket.priority,
                        due_at=due_at,
                        overdue_by_hours=round(
                            ((stopped_at or as_of) - due_at).total_seconds() / 3600, 2
                        ),
                        escalation_level=level,
                    )
                )
        items.sort(
            key=lambda item: (
                -ESCALATION_RANK[item.escalation_level],
                item.due_at,
                item.ticket_id,
                item.clock,
            )
        )
        return TicketViolationsResponse(as_of=as_of, items=items)

    def sweep_violations(self, *, now: Optional[datetime] = None) -> TicketSweepResponse:
        violations = self.find_violations(now=now)
        notifications_sent = 0
        if self._notification_sink is not None:
            for item in violations.items:
                ticket = self._load(item.ticket_id)
                self._notification_sink.notify(
                    recipient_ref=ticket.created_by,
                    subject=f"Ticket SLA violated: {ticket.subject}",
                    body=(
                        f"The {item.clock.replace('_', ' ')} deadline of ticket "
                        f"{ticket.ticket_id} passed at {item.due_at.isoformat()}."
                    ),
                    related_entity_ref=ticket.ticket_id,
                )
                notifications_sent += 1
        logger.info(
            "ticket.sla_sweep",
            extra={
                "extra_fields": {
                    "violations": len(violations.items),
                    "notifications_sent": notifications_sent,
                }
            },
        )
        return TicketSweepResponse(
            as_of=violations.as_of,
            violations=len(violations.items),
            notifications_sent=notifications_sent,
        )

    def _transition(self, ticket: TicketRecord, action: str) -> TicketStatus:
        status = TICKET_TRANSITIONS.get((ticket.status, action))
        if status is None:
            raise InvalidTransitionError(
                details={
                    "ticket_id": ticket.ticket_id,
                    "current_status": ticket.status,
                    "attempted": action,
                }
            )
        return status

    def _save(
        self, current: TicketRecord, updated: TicketRecord, events: list[DomainEvent]
    ) -> TicketRecord:
        committed = updated.model_copy(update={"version": current.version + 1})
        self._repository.update_ticket(
            ticket=committed, expected_version=current.version, events=events
        )
        self._after_commit(committed, events)
        return committed

    def _after_commit(self, ticket: TicketRecord, events: list[DomainEvent]) -> None:
        for event in events:
            logger.info(
                "ticket.event",
                extra={
                    "extra_fields": {
                        "event_type": event.event_type,
                        "ticket_id": ticket.ticket_id,
                        "ticket_status": ticket.status,
                    }
                },
            )
            if self._notifier is None:
                continue
            try:
                self._notifier.publish(event)
            except Exception:
                logger.exception(
                    "event.publish_failed",
                    extra={"extra_fields": {"event_id": event.event_id}},
                )

    def _event(
        self,
        event_type: str,
        ticket: TicketRecord,
        *,
        actor_ref: str,
        now: datetime,
        payload: dict,
    ) -> DomainEvent:
        return new_event(
            event_type,
            entity_type="ticket",
            entity_id=ticket.ticket_id,
            journey_id=ticket.journey_id,
            actor_ref=actor_ref,
            occurred_at=now,
            payload=payload,
        )

    def _mutate(self, operation: str, attempt: Callable[[], TicketRecord]) -> TicketRecord:
        retries = 0
        while True:
            try:
                return attempt()
            except ConcurrentModificationError:
                if retries >= self._max_conflict_retries:
                    raise
                retries += 1
                logger.info(
                    "ticket.conflict_retry",
                    extra={"extra_fields": {"operation": operation, "attempt": retries}},
                )

    def _load(self, ticket_id: str) -> TicketRecord:
        ticket = self._repository.get_ticket(ticket_id=ticket_id)
        if ticket is None:
            raise TicketNotFoundError(details={"ticket_id": ticket_id})
        return ticket


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _sla_view(ticket: TicketRecord, as_of: datetime) -> TicketSlaView:
    first_response = classify_sla(
        ticket.frt_due_at, as_of, clock="first_response", stopped_at=ticket.first_response_at
    )
    resolution = classify_sla(
        ticket.ttr_due_at, as_of, clock="resolution", stopped_at=ticket.resolved_at
    )
    return TicketSlaView(
        ticket=ticket,
        as_of=as_of,
        first_response=first_response,
        resolution=resolution,
        escalation_level=escalation_level(first_response, resolution),
    )
