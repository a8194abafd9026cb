from typing import Any, Optional


class JourneyEngineError(Exception):
    """Base class for typed engine failures.

    ``str(exc)`` is the stable error code; ``details`` carries the structured
    context (entity ids, missing requirements, current vs attempted status) the
    presentation layer needs to render an actionable message.
    """

    code = "JOURNEY_ENGINE_ERROR"

    def __init__(
        self,
        code: Optional[str] = None,
        *,
        message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code or self.code
        self.message = message or self.code
        self.details = details or {}
        super().__init__(self.code)

    def to_problem(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(JourneyEngineError):
    code = "NOT_FOUND"


class TemplateNotFoundError(NotFoundError):
    code = "TEMPLATE_NOT_FOUND"


class JourneyNotFoundError(NotFoundError):
    code = "JOURNEY_NOT_FOUND"


class StageNotFoundError(NotFoundError):
    code = "STAGE_NOT_FOUND"


class UploadNotFoundError(NotFoundError):
    code = "UPLOAD_NOT_FOUND"


class RequirementNotFoundError(NotFoundError):
    code = "REQUIREMENT_NOT_FOUND"


class TicketNotFoundError(NotFoundError):
    code = "TICKET_NOT_FOUND"


class SubjectInvalidError(JourneyEngineError):
    code = "SUBJECT_INVALID"


class InvalidTransitionError(JourneyEngineError):
    code = "INVALID_TRANSITION"


class GateNotSatisfiedError(JourneyEngineError):
    code = "GATE_NOT_SATISFIED"


class AlreadyCompletedError(JourneyEngineError):
    code = "ALREADY_COMPLETED"


class InstanceTerminalError(JourneyEngineError):
    code = "INSTANCE_TERMINAL"


class PolicyMissingError(JourneyEngineError):
    code = "POLICY_MISSING"


class TemplateConflictError(JourneyEngineError):
    code = "TEMPLATE_CONFLICT"


class TemplateInvalidError(JourneyEngineError):
    code = "TEMPLATE_INVALID"


class UploadInvalidError(JourneyEngineError):
    code = "UPLOAD_INVALID"


class IdempotencyConflictError(JourneyEngineError):
    code = "IDEMPOTENCY_KEY_CONFLICT"


class ConcurrentModificationError(JourneyEngineError):
    """Raised by repositories when a compare-and-set guard did not hold.

    ``details["guard"]`` names the guard (``journey``, ``stage``, ``upload``,
    ``ticket``) and ``details["entity_id"]`` the row that changed underneath.
    """

    code = "CONCURRENT_MODIFICATION"

    @property
    def guard(self) -> Optional[str]:
        return self.details.get("guard")


class StoreUnavailableError(JourneyEngineError):
    code = "STORE_UNAVAILABLE"
