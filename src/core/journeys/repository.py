from datetime import datetime
from typing import Optional, Protocol

from src.core.journeys.models import (
    DocumentRequirementRecord,
    DocumentUploadRecord,
    DomainEvent,
    JourneyChangeSet,
    JourneyIdempotencyRecord,
    JourneyInstanceRecord,
    JourneyTemplateRecord,
    StageInstanceRecord,
    TemplateStageRecord,
)


class JourneyRepository(Protocol):
    def save_template(
        self,
        *,
        template: JourneyTemplateRecord,
        stages: list[TemplateStageRecord],
        requirements: list[DocumentRequirementRecord],
    ) -> None: ...

    def get_template(self, *, template_id: str) -> Optional[JourneyTemplateRecord]: ...

    def list_template_stages(self, *, template_id: str) -> list[TemplateStageRecord]: ...

    def list_requirements(self, *, stage_ref: str) -> list[DocumentRequirementRecord]: ...

    def get_requirement(self, *, requirement_id: str) -> Optional[DocumentRequirementRecord]: ...

    def get_journey(self, *, journey_id: str) -> Optional[JourneyInstanceRecord]: ...

    def list_journeys(
        self,
        *,
        status: Optional[str],
        owner_ref: Optional[str],
        client_tax_id: Optional[str],
        template_id: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[JourneyInstanceRecord], Optional[str]]: ...

    def list_stages(self, *, journey_id: str) -> list[StageInstanceRecord]: ...

    def get_stage(self, *, stage_id: str) -> Optional[StageInstanceRecord]: ...

    def list_uploads(self, *, stage_id: str) -> list[DocumentUploadRecord]: ...

    def get_upload(self, *, upload_id: str) -> Optional[DocumentUploadRecord]: ...

    def list_overdue_stages(
        self, *, journey_id: Optional[str], due_before: datetime
    ) -> list[StageInstanceRecord]: ...

    def list_events(self, *, journey_id: str) -> list[DomainEvent]: ...

    def get_idempotency(self, *, idempotency_key: str) -> Optional[JourneyIdempotencyRecord]: ...

    def apply_changes(self, changes: JourneyChangeSet) -> None: ...
