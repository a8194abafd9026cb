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
from src.core.journeys.models import (
    CustomStageRequest,
    DocumentReviewRequest,
    DocumentSubmitRequest,
    JourneyDetailResponse,
    NextAction,
    StartJourneyRequest,
    SubjectRef,
    TemplatePublishRequest,
)
from src.core.journeys.repository import JourneyRepository
from src.core.journeys.service import JourneyOrchestrationService
from src.core.journeys.templates import TemplateRegistry

__all__ = [
    "AlreadyCompletedError",
    "ConcurrentModificationError",
    "CustomStageRequest",
    "DocumentReviewRequest",
    "DocumentSubmitRequest",
    "GateNotSatisfiedError",
    "IdempotencyConflictError",
    "InstanceTerminalError",
    "InvalidTransitionError",
    "JourneyDetailResponse",
    "JourneyEngineError",
    "JourneyOrchestrationService",
    "JourneyRepository",
    "NextAction",
    "NotFoundError",
    "PolicyMissingError",
    "StartJourneyRequest",
    "StoreUnavailableError",
    "SubjectInvalidError",
    "SubjectRef",
    "TemplateConflictError",
    "TemplateInvalidError",
    "TemplatePublishRequest",
    "TemplateRegistry",
    "UploadInvalidError",
]
