from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from src.api.routers.journey_http_errors import raise_journey_http_exception
from src.api.routers.runtime_utils import assert_feature_enabled
from src.api.services.runtime import get_ticket_service
from src.core.journeys import JourneyEngineError
from src.core.tickets import (
    TicketOpenRequest,
    TicketPriorityChangeRequest,
    TicketRecord,
    TicketSlaService,
)
from src.core.tickets.models import (
    TicketActorRequest,
    TicketSlaPolicyResponse,
    TicketSlaView,
    TicketViolationsResponse,
)

router = APIRouter(tags=["Ticket SLA"])

TicketId = Annotated[str, Path(description="Ticket identifier.", examples=["tk_001"])]
Service = Annotated[TicketSlaService, Depends(get_ticket_service)]


def _assert_ticket_apis_enabled() -> None:
    assert_feature_enabled(
        name="TICKET_SLA_APIS_ENABLED",
        default=True,
        detail="TICKET_SLA_APIS_DISABLED",
    )


@router.post(
    "/tickets",
    response_model=TicketRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Open Ticket",
    description="Opens a support ticket; both SLA deadlines are derived from its priority.",
)
def open_ticket(payload: TicketOpenRequest, service: Service) -> TicketRecord:
    _assert_ticket_apis_enabled()
    try:
        return service.open_ticket(payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/tickets/violations",
    response_model=TicketViolationsResponse,
    status_code=status.HTTP_200_OK,
    summary="List SLA Violations",
)
def list_violations(service: Service) -> TicketViolationsResponse:
    _assert_ticket_apis_enabled()
    try:
        return service.find_violations()
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/tickets/sla-policy",
    response_model=TicketSlaPolicyResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Ticket SLA Policy",
)
def get_sla_policy(service: Service) -> TicketSlaPolicyResponse:
    _assert_ticket_apis_enabled()
    return service.get_policy()


@router.get(
    "/tickets/{ticket_id}",
    response_model=TicketSlaView,
    status_code=status.HTTP_200_OK,
    summary="Get Ticket",
    description="Returns the ticket with the urgency band of each SLA clock.",
)
def get_ticket(ticket_id: TicketId, service: Service) -> TicketSlaView:
    _assert_ticket_apis_enabled()
    try:
        return service.get_ticket_sla(ticket_id=ticket_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/tickets/{ticket_id}/priority",
    response_model=TicketRecord,
    status_code=status.HTTP_200_OK,
    summary="Change Ticket Priority",
    description="Re-derives both deadlines from the ticket creation time.",
)
def change_priority(
    ticket_id: TicketId, payload: TicketPriorityChangeRequest, service: Service
) -> TicketRecord:
    _assert_ticket_apis_enabled()
    try:
        return service.change_priority(ticket_id=ticket_id, payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/tickets/{ticket_id}/first-response",
    response_model=TicketRecord,
    status_code=status.HTTP_200_OK,
    summary="Record First Response",
)
def record_first_response(
    ticket_id: TicketId, payload: TicketActorRequest, service: Service
) -> TicketRecord:
    _assert_ticket_apis_enabled()
    try:
        return service.record_first_response(ticket_id=ticket_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/tickets/{ticket_id}/resolve",
    response_model=TicketRecord,
    status_code=status.HTTP_200_OK,
    summary="Resolve Ticket",
)
def resolve_ticket(
    ticket_id: TicketId, payload: TicketActorRequest, service: Service
) -> TicketRecord:
    _assert_ticket_apis_enabled()
    try:
        return service.resolve_ticket(ticket_id=ticket_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/tickets/{ticket_id}/close",
    response_model=TicketRecord,
    status_code=status.HTTP_200_OK,
    summary="Close Ticket",
)
def close_ticket(
    ticket_id: TicketId, payload: TicketActorRequest, service: Service
) -> TicketRecord:
    _assert_ticket_apis_enabled()
    try:
        return service.close_ticket(ticket_id=ticket_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)
