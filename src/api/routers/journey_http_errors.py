import logging
from typing import NoReturn

from fastapi import HTTPException, status

from src.core.journeys.errors import (
    AlreadyCompletedError,
    ConcurrentModificationError,
    GateNotSatisfiedError,
    IdempotencyConflictError,
    InstanceTerminalError,
    InvalidTransitionError,
    JourneyEngineError,
    NotFoundError,
    PolicyMissingError,
    StoreUnavailableError,
    SubjectInvalidError,
    TemplateConflictError,
    TemplateInvalidError,
    UploadInvalidError,
)

logger = logging.getLogger(__name__)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)

_STATUS_BY_ERROR: list[tuple[type[JourneyEngineError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (SubjectInvalidError, HTTP_422_UNPROCESSABLE),
    (TemplateInvalidError, HTTP_422_UNPROCESSABLE),
    (UploadInvalidError, HTTP_422_UNPROCESSABLE),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (GateNotSatisfiedError, status.HTTP_409_CONFLICT),
    (AlreadyCompletedError, status.HTTP_409_CONFLICT),
    (InstanceTerminalError, status.HTTP_409_CONFLICT),
    (TemplateConflictError, status.HTTP_409_CONFLICT),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (PolicyMissingError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def http_status_for(exc: JourneyEngineError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_journey_http_exception(exc: Exception) -> NoReturn:
    if not isinstance(exc, JourneyEngineError):
        raise exc
    status_code = http_status_for(exc)
    logger.log(
        logging.ERROR if status_code >= 500 else logging.INFO,
        "engine.error",
        extra={"extra_fields": {**exc.details, "code": exc.code, "status_code": status_code}},
    )
    raise HTTPException(status_code=status_code, detail=exc.to_problem()) from exc
