from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, status

from src.api.routers.journey_http_errors import raise_journey_http_exception
from src.api.routers.runtime_utils import assert_feature_enabled
from src.api.services.runtime import get_journey_service
from src.core.journeys import (
    CustomStageRequest,
    DocumentReviewRequest,
    DocumentSubmitRequest,
    JourneyDetailResponse,
    JourneyEngineError,
    JourneyOrchestrationService,
    NextAction,
    StartJourneyRequest,
)
from src.core.journeys.models import (
    ActorRequest,
    DocumentResponse,
    GateStatusResponse,
    JourneyEventsResponse,
    JourneyListResponse,
    JourneyStatus,
    OverdueStagesResponse,
    StageTransitionResponse,
)

router = APIRouter(tags=["Journey Lifecycle"])

JourneyId = Annotated[str, Path(description="Journey instance identifier.", examples=["ji_001"])]
StageId = Annotated[str, Path(description="Stage instance identifier.", examples=["jsi_001"])]
Service = Annotated[JourneyOrchestrationService, Depends(get_journey_service)]


def _assert_lifecycle_enabled() -> None:
    assert_feature_enabled(
        name="JOURNEY_LIFECYCLE_APIS_ENABLED",
        default=True,
        detail="JOURNEY_LIFECYCLE_APIS_DISABLED",
    )


@router.post(
    "/journeys",
    response_model=JourneyDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start Journey",
    description=(
        "Instantiates a published template for a client or case. Replaying the same "
        "Idempotency-Key with the same payload returns the journey created first."
    ),
)
def start_journey(
    payload: StartJourneyRequest,
    service: Service,
    idempotency_key: Annotated[
        Optional[str],
        Header(
            alias="Idempotency-Key",
            description="Optional key deduplicating journey creation.",
            examples=["start-journey-001"],
        ),
    ] = None,
) -> JourneyDetailResponse:
    _assert_lifecycle_enabled()
    try:
        return service.start_journey(payload=payload, idempotency_key=idempotency_key)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/journeys",
    response_model=JourneyListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Journeys",
    description="Lists journeys, newest first, with optional filters and cursor pagination.",
)
def list_journeys(
    service: Service,
    journey_status: Annotated[
        Optional[JourneyStatus],
        Query(alias="status", description="Journey status filter.", examples=["active"]),
    ] = None,
    owner_ref: Annotated[
        Optional[str], Query(description="Responsible lawyer filter.", examples=["oab_123"])
    ] = None,
    client_tax_id: Annotated[
        Optional[str],
        Query(description="Client CPF/CNPJ filter, punctuation ignored.", examples=["52998224725"]),
    ] = None,
    template_id: Annotated[
        Optional[str], Query(description="Template filter.", examples=["jt_001"])
    ] = None,
    limit: Annotated[int, Query(description="Page size.", ge=1, le=200, examples=[50])] = 50,
    cursor: Annotated[
        Optional[str],
        Query(description="Opaque cursor from the previous page.", examples=["ji_001"]),
    ] = None,
) -> JourneyListResponse:
    _assert_lifecycle_enabled()
    try:
        return service.list_journeys(
            status=journey_status,
            owner_ref=owner_ref,
            client_tax_id=client_tax_id,
            template_id=template_id,
            limit=limit,
            cursor=cursor,
        )
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/journeys/{journey_id}",
    response_model=JourneyDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Journey",
    description="Returns the journey with its stages in presentation order.",
)
def get_journey(journey_id: JourneyId, service: Service) -> JourneyDetailResponse:
    _assert_lifecycle_enabled()
    try:
        return service.get_journey(journey_id=journey_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/journeys/{journey_id}/next-action",
    response_model=Optional[NextAction],
    status_code=status.HTTP_200_OK,
    summary="Get Next Action",
    description="Returns the next action for the journey, or null when nothing is left.",
)
def get_next_action(journey_id: JourneyId, service: Service) -> Optional[NextAction]:
    _assert_lifecycle_enabled()
    try:
        return service.get_next_action(journey_id=journey_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/journeys/{journey_id}/pause",
    response_model=JourneyDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Pause Journey",
)
def pause_journey(
    journey_id: JourneyId, payload: ActorRequest, service: Service
) -> JourneyDetailResponse:
    _assert_lifecycle_enabled()
    try:
        return service.pause_journey(journey_id=journey_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/journeys/{journey_id}/resume",
    response_model=JourneyDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Resume Journey",
)
def resume_journey(
    journey_id: JourneyId, payload: ActorRequest, service: Service
) -> JourneyDetailResponse:
    _assert_lifecycle_enabled()
    try:
        return service.resume_journey(journey_id=journey_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/journeys/{journey_id}/reconcile",
    response_model=JourneyDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Reconcile Journey",
    description=(
        "Recomputes cached progress, next action and completion status from the stage "
        "set and records a JourneyReconciled event when anything was repaired."
    ),
)
def reconcile_journey(
    journey_id: JourneyId, payload: ActorRequest, service: Service
) -> JourneyDetailResponse:
    _assert_lifecycle_enabled()
    try:
        return service.reconcile_journey(journey_id=journey_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/journeys/{journey_id}/stages",
    response_model=StageTransitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add Custom Stage",
    description="Appends an ad-hoc stage to a running journey.",
)
def add_custom_stage(
    journey_id: JourneyId, payload: CustomStageRequest, service: Service
) -> StageTransitionResponse:
    _assert_lifecycle_enabled()
    try:
        return service.add_custom_stage(journey_id=journey_id, payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/journeys/{journey_id}/events",
    response_model=JourneyEventsResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Journey Timeline",
)
def list_journey_events(journey_id: JourneyId, service: Service) -> JourneyEventsResponse:
    _assert_lifecycle_enabled()
    try:
        return service.list_events(journey_id=journey_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/journeys/{journey_id}/overdue",
    response_model=OverdueStagesResponse,
    status_code=status.HTTP_200_OK,
    summary="List Overdue Stages",
)
def list_overdue_stages(journey_id: JourneyId, service: Service) -> OverdueStagesResponse:
    _assert_lifecycle_enabled()
    try:
        return service.find_overdue_stages(journey_id=journey_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/stages/{stage_id}/start",
    response_model=StageTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Start Stage",
)
def start_stage(
    stage_id: StageId, payload: ActorRequest, service: Service
) -> StageTransitionResponse:
    _assert_lifecycle_enabled()
    try:
        return service.start_stage(stage_id=stage_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/stages/{stage_id}/complete",
    response_model=StageTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Complete Stage",
    description=(
        "Completes a stage. Upload and gate stages are refused with GATE_NOT_SATISFIED "
        "until every required document is approved."
    ),
)
def complete_stage(
    stage_id: StageId, payload: ActorRequest, service: Service
) -> StageTransitionResponse:
    _assert_lifecycle_enabled()
    try:
        return service.complete_stage(stage_id=stage_id, actor_ref=payload.actor_ref)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.get(
    "/stages/{stage_id}/gate",
    response_model=GateStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Document Gate Status",
)
def get_gate_status(stage_id: StageId, service: Service) -> GateStatusResponse:
    _assert_lifecycle_enabled()
    try:
        return service.get_gate_status(stage_id=stage_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/stages/{stage_id}/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit Document",
)
def submit_document(
    stage_id: StageId, payload: DocumentSubmitRequest, service: Service
) -> DocumentResponse:
    _assert_lifecycle_enabled()
    try:
        return service.submit_document(stage_id=stage_id, payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/documents/{upload_id}/review",
    response_model=DocumentResponse,
    status_code=status.HTTP_200_OK,
    summary="Review Document",
)
def review_document(
    upload_id: Annotated[
        str, Path(description="Document upload identifier.", examples=["jdu_001"])
    ],
    payload: DocumentReviewRequest,
    service: Service,
) -> DocumentResponse:
    _assert_lifecycle_enabled()
    try:
        return service.review_document(upload_id=upload_id, payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)
