from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from src.api.routers.journey_http_errors import raise_journey_http_exception
from src.api.routers.runtime_utils import assert_feature_enabled
from src.api.services.runtime import get_journey_service
from src.core.journeys import (
    JourneyEngineError,
    JourneyOrchestrationService,
    TemplatePublishRequest,
)
from src.core.journeys.models import TemplateDetailResponse

router = APIRouter(tags=["Journey Templates"])

TemplateId = Annotated[str, Path(description="Template identifier.", examples=["jt_001"])]
Service = Annotated[JourneyOrchestrationService, Depends(get_journey_service)]


def _assert_template_admin_enabled() -> None:
    assert_feature_enabled(
        name="JOURNEY_TEMPLATE_ADMIN_APIS_ENABLED",
        default=False,
        detail="JOURNEY_TEMPLATE_ADMIN_APIS_DISABLED",
    )


@router.get(
    "/journey-templates/{template_id}",
    response_model=TemplateDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Journey Template",
    description="Returns a published template with its ordered stages and document requirements.",
)
def get_template(template_id: TemplateId, service: Service) -> TemplateDetailResponse:
    try:
        return service.get_template(template_id=template_id)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/journey-templates",
    response_model=TemplateDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Publish Journey Template",
    description="Publishes an immutable template. Disabled unless template admin APIs are on.",
)
def publish_template(
    payload: TemplatePublishRequest, service: Service
) -> TemplateDetailResponse:
    _assert_template_admin_enabled()
    try:
        return service.publish_template(payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)


@router.post(
    "/journey-templates/{template_id}/revisions",
    response_model=TemplateDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Revise Journey Template",
    description=(
        "Publishes a new template version superseding the given one. Running journeys keep "
        "the version they were started from."
    ),
)
def revise_template(
    template_id: TemplateId, payload: TemplatePublishRequest, service: Service
) -> TemplateDetailResponse:
    _assert_template_admin_enabled()
    try:
        return service.revise_template(template_id=template_id, payload=payload)
    except JourneyEngineError as exc:
        raise_journey_http_exception(exc)
