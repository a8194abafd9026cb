from typing import Annotated

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from src.api.routers.journey_http_errors import raise_journey_http_exception
from src.api.services.runtime import get_journey_service, get_ticket_service
from src.core.journeys import JourneyEngineError, JourneyOrchestrationService
from src.core.journeys.models import DeadlineSweepResponse
from src.core.tickets import TicketSlaService
from src.core.tickets.models import TicketSweepResponse

router = APIRouter(tags=["Deadlines"])


class SweepSummaryResponse(BaseModel):
    journeys: DeadlineSweepResponse
    tickets: TicketSweepResponse


@router.post(
    "/deadlines/sweep",
    response_model=SweepSummaryResponse,
    status_code=status.HTTP_200_OK,
    summary="Run Deadline Sweep",
    description=(
        "Scheduler hook: finds overdue journey stages and violated ticket SLA clocks as of "
        "now and notifies the responsible actors. Safe to call repeatedly."
    ),
)
def run_deadline_sweep(
    journeys: Annotated[JourneyOrchestrationService, Depends(get_journey_service)],
    tickets: Annotated[TicketSlaService, Depends(get_ticket_service)],
) -> SweepSummaryResponse:
    try:
        return SweepSummaryResponse(
            journeys=journeys.sweep_overdue(),
            tickets=tickets.sweep_violations(),
        )
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)
