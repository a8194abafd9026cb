from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional

from src.core.journeys.errors import ConcurrentModificationError, TemplateConflictError
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
from src.core.journeys.repository import JourneyRepository


class InMemoryJourneyRepository(JourneyRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._templates: dict[str, JourneyTemplateRecord] = {}
        self._template_stages: dict[str, TemplateStageRecord] = {}
        self._requirements: dict[str, DocumentRequirementRecord] = {}
        self._journeys: dict[str, JourneyInstanceRecord] = {}
        self._stages: dict[str, StageInstanceRecord] = {}
        self._uploads: dict[str, DocumentUploadRecord] = {}
        self._events: dict[str, list[DomainEvent]] = {}
        self._idempotency: dict[str, JourneyIdempotencyRecord] = {}

    def save_template(
        self,
        *,
        template: JourneyTemplateRecord,
        stages: list[TemplateStageRecord],
        requirements: list[DocumentRequirementRecord],
    ) -> None:
        with self._lock:
            if template.template_id in self._templates:
                raise TemplateConflictError(details={"template_id": template.template_id})
            self._templates[template.template_id] = deepcopy(template)
            for stage in stages:
                self._template_stages[stage.template_stage_id] = deepcopy(stage)
            for requirement in requirements:
                self._requirements[requirement.requirement_id] = deepcopy(requirement)

    def get_template(self, *, template_id: str) -> Optional[JourneyTemplateRecord]:
        with self._lock:
            template = self._templates.get(template_id)
            return deepcopy(template) if template is not None else None

    def list_template_stages(self, *, template_id: str) -> list[TemplateStageRecord]:
        with self._lock:
            return [
                deepcopy(stage)
                for stage in self._template_stages.values()
                if stage.template_id == template_id
            ]

    def list_requirements(self, *, stage_ref: str) -> list[DocumentRequirementRecord]:
        with self._lock:
            return [
                deepcopy(requirement)
                for requirement in self._requirements.values()
                if requirement.stage_ref == stage_ref
            ]

    def get_requirement(self, *, requirement_id: str) -> Optional[DocumentRequirementRecord]:
        with self._lock:
            requirement = self._requirements.get(requirement_id)
            return deepcopy(requirement) if requirement is not None else None

    def get_journey(self, *, journey_id: str) -> Optional[JourneyInstanceRecord]:
        with self._lock:
            journey = self._journeys.get(journey_id)
            return deepcopy(journey) if journey is not None else None

    def list_journeys(
        self,
        *,
        status: Optional[str],
        owner_ref: Optional[str],
        client_tax_id: Optional[str],
        template_id: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[JourneyInstanceRecord], Optional[str]]:
        with self._lock:
            rows = list(self._journeys.values())
            if status is not None:
                rows = [row for row in rows if row.status == status]
            if owner_ref is not None:
                rows = [row for row in rows if row.owner_ref == owner_ref]
            if client_tax_id is not None:
                rows = [row for row in rows if row.subject.client_tax_id == client_tax_id]
            if template_id is not None:
                rows = [row for row in rows if row.template_id == template_id]
            rows = sorted(rows, key=lambda item: (item.started_at, item.journey_id), reverse=True)
            if cursor is not None:
                cursor_index = next(
                    (index for index, row in enumerate(rows) if row.journey_id == cursor),
                    None,
                )
                if cursor_index is None:
                    return [], None
                rows = rows[cursor_index + 1 :]
            page = rows[:limit]
            next_cursor = page[-1].journey_id if len(rows) > limit else None
            return [deepcopy(row) for row in page], next_cursor

    def list_stages(self, *, journey_id: str) -> list[StageInstanceRecord]:
        with self._lock:
            return [
                deepcopy(stage)
                for stage in self._stages.values()
                if stage.journey_id == journey_id
            ]

    def get_stage(self, *, stage_id: str) -> Optional[StageInstanceRecord]:
        with self._lock:
            stage = self._stages.get(stage_id)
            return deepcopy(stage) if stage is not None else None

    def list_uploads(self, *, stage_id: str) -> list[DocumentUploadRecord]:
        with self._lock:
            return sorted(
                (
                    deepcopy(upload)
                    for upload in self._uploads.values()
                    if upload.stage_id == stage_id
                ),
                key=lambda item: (item.uploaded_at, item.upload_id),
            )

    def get_upload(self, *, upload_id: str) -> Optional[DocumentUploadRecord]:
        with self._lock:
            upload = self._uploads.get(upload_id)
            return deepcopy(upload) if upload is not None else None

    def list_overdue_stages(
        self, *, journey_id: Optional[str], due_before: datetime
    ) -> list[StageInstanceRecord]:
        with self._lock:
            rows = [
                stage
                for stage in self._stages.values()
                if stage.status != "completed"
                and stage.due_at is not None
                and stage.due_at < due_before
                and (journey_id is None or stage.journey_id == journey_id)
                and self._journeys[stage.journey_id].status != "completed"
            ]
            rows.sort(key=lambda item: (item.due_at, item.stage_id))
            return [deepcopy(row) for row in rows]

    def list_events(self, *, journey_id: str) -> list[DomainEvent]:
        with self._lock:
            return [deepcopy(event) for event in self._events.get(journey_id, [])]

    def get_idempotency(self, *, idempotency_key: str) -> Optional[JourneyIdempotencyRecord]:
        with self._lock:
            record = self._idempotency.get(idempotency_key)
            return deepcopy(record) if record is not None else None

    def apply_changes(self, changes: JourneyChangeSet) -> None:
        journey = changes.journey
        with self._lock:
            stored = self._journeys.get(journey.journey_id)
            if changes.expected_version is None:
                if stored is not None:
                    raise _conflict("journey", journey.journey_id)
            elif stored is None or stored.version != changes.expected_version:
                raise _conflict("journey", journey.journey_id)
            if changes.idempotency is not None:
                if changes.idempotency.idempotency_key in self._idempotency:
                    raise _conflict("idempotency", changes.idempotency.idempotency_key)
            for guard in changes.updated_stages:
                current = self._stages.get(guard.stage.stage_id)
                if current is None or current.status != guard.expected_status:
                    raise _conflict("stage", guard.stage.stage_id)
            for guard in changes.updated_uploads:
                current_upload = self._uploads.get(guard.upload.upload_id)
                if current_upload is None or current_upload.status != guard.expected_status:
                    raise _conflict("upload", guard.upload.upload_id)

            self._journeys[journey.journey_id] = deepcopy(journey)
            for stage in changes.created_stages:
                self._stages[stage.stage_id] = deepcopy(stage)
            for guard in changes.updated_stages:
                self._stages[guard.stage.stage_id] = deepcopy(guard.stage)
            for requirement in changes.created_requirements:
                self._requirements[requirement.requirement_id] = deepcopy(requirement)
            for upload in changes.created_uploads:
                self._uploads[upload.upload_id] = deepcopy(upload)
            for guard in changes.updated_uploads:
                self._uploads[guard.upload.upload_id] = deepcopy(guard.upload)
            self._events.setdefault(journey.journey_id, []).extend(
                deepcopy(event) for event in changes.events
            )
            if changes.idempotency is not None:
                self._idempotency[changes.idempotency.idempotency_key] = deepcopy(
                    changes.idempotency
                )


def _conflict(guard: str, entity_id: str) -> ConcurrentModificationError:
    return ConcurrentModificationError(details={"guard": guard, "entity_id": entity_id})
