"""Journey and stage state machines.

Every function here is pure: it validates a transition against the records it is
given and returns the new records plus the domain events describing the change.
Persisting them, atomically and under guards, is the orchestration service's job.
"""

from datetime import datetime
from typing import Optional

from src.core.journeys.deadlines import compute_due_at
from src.core.journeys.documents import is_gated, to_refs, validate_upload
from src.core.journeys.errors import (
    AlreadyCompletedError,
    GateNotSatisfiedError,
    InstanceTerminalError,
    InvalidTransitionError,
    TemplateInvalidError,
)
from src.core.journeys.events import new_event
from src.core.journeys.ids import new_id
from src.core.journeys.models import (
    GATED_STAGE_KINDS,
    CustomStageRequest,
    DocumentRequirementRecord,
    DocumentReviewRequest,
    DocumentSubmitRequest,
    DocumentUploadRecord,
    DomainEvent,
    JourneyInstanceRecord,
    JourneyStatus,
    JourneyTemplateRecord,
    StageInstanceRecord,
    StageStatus,
    SubjectRef,
    TemplateStageRecord,
)
from src.core.journeys.progress import (
    GateLookup,
    compute_next_action,
    compute_progress,
    is_journey_complete,
)

JOURNEY_TRANSITIONS: dict[tuple[JourneyStatus, str], JourneyStatus] = {
    ("active", "pause"): "paused",
    ("paused", "resume"): "active",
    ("active", "complete"): "completed",
}

STAGE_TRANSITIONS: dict[tuple[StageStatus, str], StageStatus] = {
    ("pending", "start"): "in_progress",
    ("pending", "complete"): "completed",
    ("in_progress", "complete"): "completed",
}

__all__ = [
    "JOURNEY_TRANSITIONS",
    "STAGE_TRANSITIONS",
    "add_custom_stage",
    "complete_stage",
    "is_journey_complete",
    "pause_journey",
    "refresh_journey",
    "resume_journey",
    "review_upload",
    "start_journey",
    "start_stage",
    "submit_upload",
]


def resolve_journey_transition(
    *, current_status: JourneyStatus, action: str
) -> Optional[JourneyStatus]:
    return JOURNEY_TRANSITIONS.get((current_status, action))


def resolve_stage_transition(*, current_status: StageStatus, action: str) -> Optional[StageStatus]:
    return STAGE_TRANSITIONS.get((current_status, action))


def ensure_not_terminal(journey: JourneyInstanceRecord) -> None:
    if journey.status == "completed":
        raise InstanceTerminalError(
            message="Completed journeys cannot be modified.",
            details={"journey_id": journey.journey_id, "current_status": journey.status},
        )


def ensure_active(journey: JourneyInstanceRecord, *, attempted: str) -> None:
    ensure_not_terminal(journey)
    if journey.status == "paused":
        raise InvalidTransitionError(
            "JOURNEY_PAUSED",
            message="Resume the journey before advancing its stages.",
            details={
                "journey_id": journey.journey_id,
                "current_status": journey.status,
                "attempted": attempted,
            },
        )


def start_journey(
    *,
    template: JourneyTemplateRecord,
    template_stages: list[TemplateStageRecord],
    subject: SubjectRef,
    owner_ref: str,
    actor_ref: str,
    now: datetime,
) -> tuple[JourneyInstanceRecord, list[StageInstanceRecord], list[DomainEvent]]:
    journey_id = new_id("ji")
    journey = JourneyInstanceRecord(
        journey_id=journey_id,
        template_id=template.template_id,
        subject=subject,
        owner_ref=owner_ref,
        created_by=actor_ref,
        started_at=now,
        status="active",
        progress_pct=0,
    )
    stages = [
        StageInstanceRecord(
            stage_id=new_id("jsi"),
            journey_id=journey_id,
            template_stage_id=template_stage.template_stage_id,
            sequence_no=sequence_no,
            position=template_stage.position,
            title=template_stage.title,
            description=template_stage.description,
            kind=template_stage.kind,
            mandatory=template_stage.mandatory,
            status="pending",
            created_at=now,
            due_at=compute_due_at(now, template_stage.sla_hours),
        )
        for sequence_no, template_stage in enumerate(template_stages, start=1)
    ]
    event = new_event(
        "JourneyStarted",
        entity_type="journey",
        entity_id=journey_id,
        journey_id=journey_id,
        actor_ref=actor_ref,
        occurred_at=now,
        payload={
            "template_id": template.template_id,
            "template_version": template.version,
            "owner_ref": owner_ref,
            "stage_count": len(stages),
        },
    )
    return journey, stages, [event]


def start_stage(
    *,
    journey: JourneyInstanceRecord,
    stage: StageInstanceRecord,
    actor_ref: str,
    now: datetime,
) -> tuple[StageInstanceRecord, DomainEvent]:
    if stage.status == "completed":
        raise AlreadyCompletedError(
            details={"stage_id": stage.stage_id, "current_status": stage.status}
        )
    ensure_active(journey, attempted="start_stage")
    next_status = resolve_stage_transition(current_status=stage.status, action="start")
    if next_status is None:
        raise InvalidTransitionError(
            "STAGE_ALREADY_STARTED",
            details={
                "stage_id": stage.stage_id,
                "current_status": stage.status,
                "attempted": "in_progress",
            },
        )
    started = stage.model_copy(update={"status": next_status, "started_at": now})
    event = new_event(
        "StageStarted",
        entity_type="stage",
        entity_id=stage.stage_id,
        journey_id=journey.journey_id,
        actor_ref=actor_ref,
        occurred_at=now,
    )
    return started, event


def complete_stage(
    *,
    journey: JourneyInstanceRecord,
    stage: StageInstanceRecord,
    gate_satisfied: bool,
    pending: list[DocumentRequirementRecord],
    actor_ref: str,
    now: datetime,
) -> tuple[StageInstanceRecord, DomainEvent]:
    # a repeated completion is reported as such even once the journey is closed
    if stage.status == "completed":
        raise AlreadyCompletedError(
            message="Stage is already completed.",
            details={
                "stage_id": stage.stage_id,
                "current_status": stage.status,
                "completed_at": stage.completed_at.isoformat() if stage.completed_at else None,
                "completed_by": stage.completed_by,
            },
        )
    ensure_active(journey, attempted="complete_stage")
    if is_gated(stage) and not gate_satisfied:
        missing = [requirement for requirement in pending if requirement.required]
        raise GateNotSatisfiedError(
            message="Required documents are not approved yet.",
            details={
                "stage_id": stage.stage_id,
                "missing_requirements": [
                    ref.model_dump(mode="json") for ref in to_refs(missing)
                ],
            },
        )
    next_status = resolve_stage_transition(current_status=stage.status, action="complete")
    if next_status is None:
        raise InvalidTransitionError(
            details={
                "stage_id": stage.stage_id,
                "current_status": stage.status,
                "attempted": "completed",
            }
        )
    completed = stage.model_copy(
        update={
            "status": next_status,
            "started_at": stage.started_at or now,
            "completed_at": now,
            "completed_by": actor_ref,
        }
    )
    event = new_event(
        "StageCompleted",
        entity_type="stage",
        entity_id=stage.stage_id,
        journey_id=journey.journey_id,
        actor_ref=actor_ref,
        occurred_at=now,
        payload={"mandatory": stage.mandatory, "kind": stage.kind},
    )
    return completed, event


def add_custom_stage(
    *,
    journey: JourneyInstanceRecord,
    existing_stages: list[StageInstanceRecord],
    payload: CustomStageRequest,
    now: datetime,
) -> tuple[StageInstanceRecord, list[DocumentRequirementRecord], DomainEvent]:
    ensure_not_terminal(journey)
    if payload.requirements and payload.kind not in GATED_STAGE_KINDS:
        raise TemplateInvalidError(
            "STAGE_SPEC_INVALID",
            message="Document requirements are only allowed on upload and gate stages.",
            details={"journey_id": journey.journey_id, "kind": payload.kind},
        )
    stage_id = new_id("jsi")
    stage = StageInstanceRecord(
        stage_id=stage_id,
        journey_id=journey.journey_id,
        template_stage_id=None,
        sequence_no=max((item.sequence_no for item in existing_stages), default=0) + 1,
        position=max((item.position for item in existing_stages), default=0) + 1,
        title=payload.title,
        description=payload.description,
        kind=payload.kind,
        mandatory=payload.mandatory,
        status="pending",
        created_at=now,
        due_at=compute_due_at(now, payload.sla_hours),
    )
    requirements = [
        DocumentRequirementRecord(
            requirement_id=new_id("jdr"),
            stage_ref=stage_id,
            name=requirement.name,
            required=requirement.required,
            accepted_file_types=requirement.accepted_file_types,
            max_size_mb=requirement.max_size_mb,
        )
        for requirement in payload.requirements
    ]
    event = new_event(
        "StageAdded",
        entity_type="stage",
        entity_id=stage_id,
        journey_id=journey.journey_id,
        actor_ref=payload.actor_ref,
        occurred_at=now,
        payload={
            "title": stage.title,
            "kind": stage.kind,
            "mandatory": stage.mandatory,
            "position": stage.position,
        },
    )
    return stage, requirements, event


def _journey_transition(
    journey: JourneyInstanceRecord, *, action: str, actor_ref: str, now: datetime
) -> tuple[JourneyInstanceRecord, DomainEvent]:
    ensure_not_terminal(journey)
    next_status = resolve_journey_transition(current_status=journey.status, action=action)
    if next_status is None:
        raise InvalidTransitionError(
            details={
                "journey_id": journey.journey_id,
                "current_status": journey.status,
                "attempted": action,
            }
        )
    event_type = "JourneyPaused" if action == "pause" else "JourneyResumed"
    event = new_event(
        event_type,
        entity_type="journey",
        entity_id=journey.journey_id,
        journey_id=journey.journey_id,
        actor_ref=actor_ref,
        occurred_at=now,
    )
    return journey.model_copy(update={"status": next_status}), event


def pause_journey(
    journey: JourneyInstanceRecord, *, actor_ref: str, now: datetime
) -> tuple[JourneyInstanceRecord, DomainEvent]:
    return _journey_transition(journey, action="pause", actor_ref=actor_ref, now=now)


def resume_journey(
    journey: JourneyInstanceRecord, *, actor_ref: str, now: datetime
) -> tuple[JourneyInstanceRecord, DomainEvent]:
    return _journey_transition(journey, action="resume", actor_ref=actor_ref, now=now)


def submit_upload(
    *,
    journey: JourneyInstanceRecord,
    stage: StageInstanceRecord,
    requirement: Optional[DocumentRequirementRecord],
    payload: DocumentSubmitRequest,
    now: datetime,
) -> tuple[DocumentUploadRecord, DomainEvent]:
    ensure_not_terminal(journey)
    if stage.status == "completed":
        raise InvalidTransitionError(
            "STAGE_ALREADY_COMPLETED",
            message="Documents cannot be submitted to a completed stage.",
            details={"stage_id": stage.stage_id, "current_status": stage.status},
        )
    if requirement is not None:
        validate_upload(
            requirement,
            filename=payload.filename,
            size_bytes=payload.size_bytes,
            mime_type=payload.mime_type,
        )
    upload = DocumentUploadRecord(
        upload_id=new_id("jdu"),
        stage_id=stage.stage_id,
        requirement_id=requirement.requirement_id if requirement is not None else None,
        filename=payload.filename,
        size_bytes=payload.size_bytes,
        mime_type=payload.mime_type,
        status="pending",
        uploaded_by=payload.actor_ref,
        uploaded_at=now,
    )
    event = new_event(
        "DocumentSubmitted",
        entity_type="upload",
        entity_id=upload.upload_id,
        journey_id=journey.journey_id,
        actor_ref=payload.actor_ref,
        occurred_at=now,
        payload={
            "stage_id": stage.stage_id,
            "requirement_id": upload.requirement_id,
            "filename": upload.filename,
        },
    )
    return upload, event


def review_upload(
    *,
    journey: JourneyInstanceRecord,
    upload: DocumentUploadRecord,
    payload: DocumentReviewRequest,
    now: datetime,
) -> tuple[DocumentUploadRecord, DomainEvent]:
    ensure_not_terminal(journey)
    if upload.status != "pending":
        raise InvalidTransitionError(
            "UPLOAD_ALREADY_REVIEWED",
            message="Only pending uploads can be reviewed.",
            details={
                "upload_id": upload.upload_id,
                "current_status": upload.status,
                "attempted": payload.decision,
            },
        )
    reviewed = upload.model_copy(
        update={
            "status": "approved" if payload.decision == "approve" else "rejected",
            "reviewed_by": payload.actor_ref,
            "review_notes": payload.notes,
            "reviewed_at": now,
        }
    )
    event = new_event(
        "DocumentReviewed",
        entity_type="upload",
        entity_id=upload.upload_id,
        journey_id=journey.journey_id,
        actor_ref=payload.actor_ref,
        occurred_at=now,
        payload={
            "stage_id": upload.stage_id,
            "requirement_id": upload.requirement_id,
            "decision": payload.decision,
            "notes": payload.notes,
            "uploaded_by": upload.uploaded_by,
        },
    )
    return reviewed, event


def refresh_journey(
    *,
    journey: JourneyInstanceRecord,
    stages: list[StageInstanceRecord],
    gate_lookup: GateLookup,
    actor_ref: str,
    now: datetime,
) -> tuple[JourneyInstanceRecord, list[DomainEvent]]:
    """Recompute cached progress and next action; complete the journey when due."""
    updates: dict = {
        "progress_pct": compute_progress(stages),
        "next_action": compute_next_action(stages, gate_lookup, now),
    }
    events: list[DomainEvent] = []
    if journey.status == "active" and is_journey_complete(stages):
        updates["status"] = resolve_journey_transition(current_status="active", action="complete")
        updates["completed_at"] = now
        events.append(
            new_event(
                "JourneyCompleted",
                entity_type="journey",
                entity_id=journey.journey_id,
                journey_id=journey.journey_id,
                actor_ref=actor_ref,
                occurred_at=now,
                payload={"progress_pct": updates["progress_pct"]},
            )
        )
    return journey.model_copy(update=updates), events
