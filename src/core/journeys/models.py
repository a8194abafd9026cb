from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

StageKind = Literal["lesson", "form", "upload", "meeting", "gate", "task"]
JourneyStatus = Literal["active", "paused", "completed"]
StageStatus = Literal["pending", "in_progress", "completed"]
UploadStatus = Literal["pending", "approved", "rejected"]
ReviewDecision = Literal["approve", "reject"]
RequirementState = Literal["missing", "awaiting_review", "rejected", "approved"]
NextActionType = Literal["complete_stage", "submit_documents", "await_review"]
NextActionPriority = Literal["high", "medium", "low"]
EntityType = Literal["template", "journey", "stage", "upload", "ticket"]
StageRuleTrigger = Literal["on_enter", "on_done", "on_overdue"]
StageRuleAction = Literal["notify", "create_activity", "create_ticket", "schedule", "webhook"]

DomainEventType = Literal[
    "JourneyStarted",
    "StageStarted",
    "StageAdded",
    "StageCompleted",
    "JourneyPaused",
    "JourneyResumed",
    "JourneyCompleted",
    "JourneyReconciled",
    "DocumentSubmitted",
    "DocumentReviewed",
    "DeadlinePassed",
    "StageRuleTriggered",
    "TicketOpened",
    "TicketReprioritized",
    "TicketFirstResponded",
    "TicketResolved",
]

GATED_STAGE_KINDS: frozenset[str] = frozenset({"upload", "gate"})


class SubjectRef(BaseModel):
    client_tax_id: str = Field(
        description="Client CPF (11 digits) or CNPJ (14 digits); punctuation is ignored.",
        examples=["529.982.247-25"],
    )
    case_number: Optional[str] = Field(
        default=None,
        description="Optional CNJ case number the journey is attached to.",
        examples=["0001234-71.2024.8.26.0100"],
    )


class DocumentRequirementSpec(BaseModel):
    name: str = Field(
        min_length=1,
        description="Human-readable document name shown to the client.",
        examples=["Procuração assinada"],
    )
    required: bool = Field(
        default=True,
        description="Whether an approved upload is needed before the stage can complete.",
        examples=[True],
    )
    accepted_file_types: List[str] = Field(
        min_length=1,
        description="Accepted file extensions or MIME types.",
        examples=[["pdf", "image/jpeg"]],
    )
    max_size_mb: float = Field(
        gt=0,
        description="Maximum accepted file size in megabytes.",
        examples=[10],
    )

    @field_validator("accepted_file_types")
    @classmethod
    def _normalize_file_types(cls, value: List[str]) -> List[str]:
        normalized = [item.strip().lower().lstrip(".") for item in value if item.strip()]
        if not normalized:
            raise ValueError("accepted_file_types must not be empty")
        return normalized


class StageRule(BaseModel):
    trigger: StageRuleTrigger = Field(
        description="Stage lifecycle moment the rule reacts to.", examples=["on_enter"]
    )
    action_type: StageRuleAction = Field(
        description="Automation to run when the trigger fires.", examples=["notify"]
    )
    action_config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Action parameters, for example the notification message or recipient.",
        examples=[{"message": "Nova etapa iniciada"}],
    )
    active: bool = Field(default=True, description="Inactive rules never fire.", examples=[True])


class TemplateStageSpec(BaseModel):
    title: str = Field(min_length=1, description="Stage title.", examples=["Enviar documentos"])
    description: Optional[str] = Field(
        default=None,
        description="Optional stage guidance text.",
        examples=["Envie RG, CPF e comprovante de residência."],
    )
    kind: StageKind = Field(description="Stage kind.", examples=["upload"])
    position: Optional[int] = Field(
        default=None,
        ge=1,
        description="Explicit 1-based position; defaults to list order.",
        examples=[2],
    )
    mandatory: bool = Field(
        default=True,
        description="Whether the stage gates journey completion.",
        examples=[True],
    )
    sla_hours: Optional[int] = Field(
        default=None,
        gt=0,
        description="Stage SLA in hours; null means no deadline.",
        examples=[48],
    )
    requirements: List[DocumentRequirementSpec] = Field(
        default_factory=list,
        description="Document requirement blueprints (upload and gate stages only).",
    )
    rules: Optional[List[StageRule]] = Field(
        default=None,
        description=(
            "Automation rules; null applies the defaults of the stage kind, "
            "an empty list disables automation."
        ),
    )


class TemplatePublishRequest(BaseModel):
    template_id: Optional[str] = Field(
        default=None,
        description="Optional explicit template identifier; generated when omitted.",
        examples=["jt_trabalhista_v1"],
    )
    name: str = Field(
        min_length=1, description="Template name.", examples=["Reclamação trabalhista"]
    )
    niche: Optional[str] = Field(
        default=None,
        description="Legal niche or category tag.",
        examples=["Trabalhista"],
    )
    expected_duration_days: int = Field(
        default=0,
        ge=0,
        description="Expected journey duration in days.",
        examples=[30],
    )
    stages: List[TemplateStageSpec] = Field(
        min_length=1,
        description="Ordered stage blueprints.",
    )
    actor_ref: str = Field(
        description="Administrator publishing the template.", examples=["oab_123"]
    )


class JourneyTemplateRecord(BaseModel):
    template_id: str = Field(description="Internal template identifier.", examples=["jt_001"])
    name: str = Field(description="Internal template name.", examples=["Divórcio consensual"])
    niche: Optional[str] = Field(
        default=None, description="Internal niche tag.", examples=["Família"]
    )
    stage_count: int = Field(description="Internal stage count.", examples=[5])
    expected_duration_days: int = Field(description="Internal expected duration.", examples=[45])
    version: int = Field(default=1, ge=1, description="Internal template version.", examples=[1])
    previous_template_id: Optional[str] = Field(
        default=None, description="Template this version supersedes.", examples=["jt_000"]
    )
    created_by: str = Field(description="Internal publishing actor.", examples=["oab_123"])
    created_at: datetime = Field(
        description="Internal publish timestamp.", examples=["2026-03-01T12:00:00+00:00"]
    )


class TemplateStageRecord(BaseModel):
    template_stage_id: str = Field(description="Internal template stage id.", examples=["jts_001"])
    template_id: str = Field(description="Owning template id.", examples=["jt_001"])
    position: int = Field(ge=1, description="Dense 1-based position.", examples=[1])
    title: str = Field(description="Stage title.", examples=["Reunião inicial"])
    description: Optional[str] = Field(default=None, description="Stage description.")
    kind: StageKind = Field(description="Stage kind.", examples=["meeting"])
    mandatory: bool = Field(description="Mandatory flag.", examples=[True])
    sla_hours: Optional[int] = Field(default=None, description="SLA in hours.", examples=[24])
    rules: List[StageRule] = Field(
        default_factory=list, description="Automation rules resolved at publish time."
    )


class DocumentRequirementRecord(BaseModel):
    requirement_id: str = Field(description="Internal requirement id.", examples=["jdr_001"])
    stage_ref: str = Field(
        description="Owning template stage id, or stage instance id for ad-hoc stages.",
        examples=["jts_001"],
    )
    name: str = Field(description="Requirement name.", examples=["RG"])
    required: bool = Field(description="Blocks the gate when true.", examples=[True])
    accepted_file_types: List[str] = Field(
        min_length=1, description="Accepted types.", examples=[["pdf"]]
    )
    max_size_mb: float = Field(gt=0, description="Maximum size in MB.", examples=[5])


class RequirementRef(BaseModel):
    requirement_id: str = Field(description="Requirement identifier.", examples=["jdr_001"])
    name: str = Field(description="Requirement name.", examples=["Procuração"])
    required: bool = Field(description="Whether the requirement blocks the gate.", examples=[True])


class NextAction(BaseModel):
    type: NextActionType = Field(
        description="What the user must do next.", examples=["complete_stage"]
    )
    stage_id: str = Field(description="Stage the action refers to.", examples=["jsi_001"])
    title: str = Field(
        description="Short action text.", examples=["Complete stage: Reunião inicial"]
    )
    description: Optional[str] = Field(default=None, description="Longer guidance text.")
    due_at: Optional[datetime] = Field(default=None, description="Stage due timestamp.")
    is_overdue: bool = Field(default=False, description="Stage deadline already passed.")
    priority: NextActionPriority = Field(description="Display priority.", examples=["medium"])
    missing_requirements: List[RequirementRef] = Field(
        default_factory=list,
        description="Requirements without an approved upload (gated stages only).",
    )


class JourneyInstanceRecord(BaseModel):
    journey_id: str = Field(description="Internal journey id.", examples=["ji_001"])
    template_id: str = Field(
        description="Template the journey was started from.", examples=["jt_001"]
    )
    subject: SubjectRef = Field(description="Client and case the journey runs against.")
    owner_ref: str = Field(description="Responsible lawyer.", examples=["oab_123"])
    created_by: str = Field(description="Actor that started the journey.", examples=["oab_123"])
    started_at: datetime = Field(description="Start timestamp.")
    status: JourneyStatus = Field(description="Journey status.", examples=["active"])
    progress_pct: int = Field(ge=0, le=100, description="Cached progress.", examples=[40])
    next_action: Optional[NextAction] = Field(
        default=None, description="Next action; journey detail reads recompute it as of the read."
    )
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp.")
    version: int = Field(default=1, ge=1, description="Optimistic concurrency counter.")


class StageInstanceRecord(BaseModel):
    stage_id: str = Field(description="Internal stage instance id.", examples=["jsi_001"])
    journey_id: str = Field(description="Owning journey id.", examples=["ji_001"])
    template_stage_id: Optional[str] = Field(
        default=None, description="Source template stage; null for ad-hoc stages."
    )
    sequence_no: int = Field(ge=1, description="Creation order inside the journey.", examples=[1])
    position: int = Field(ge=1, description="Ordering position.", examples=[1])
    title: str = Field(description="Stage title snapshot.", examples=["Enviar documentos"])
    description: Optional[str] = Field(default=None, description="Stage description snapshot.")
    kind: StageKind = Field(description="Stage kind snapshot.", examples=["upload"])
    mandatory: bool = Field(description="Mandatory flag copied at creation.", examples=[True])
    status: StageStatus = Field(description="Stage status.", examples=["pending"])
    created_at: datetime = Field(description="Creation timestamp.")
    due_at: Optional[datetime] = Field(default=None, description="Immutable due timestamp.")
    started_at: Optional[datetime] = Field(default=None, description="Start timestamp.")
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp.")
    completed_by: Optional[str] = Field(default=None, description="Completing actor.")

    @model_validator(mode="after")
    def _completed_at_matches_status(self) -> "StageInstanceRecord":
        if (self.status == "completed") != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when status is completed")
        return self


class DocumentUploadRecord(BaseModel):
    upload_id: str = Field(description="Internal upload id.", examples=["jdu_001"])
    stage_id: str = Field(description="Stage instance the upload is addressed to.")
    requirement_id: Optional[str] = Field(
        default=None, description="Requirement satisfied by this upload; null when unsolicited."
    )
    filename: str = Field(description="Original file name.", examples=["procuracao.pdf"])
    size_bytes: int = Field(ge=0, description="File size in bytes.", examples=[120000])
    mime_type: str = Field(description="MIME type.", examples=["application/pdf"])
    status: UploadStatus = Field(description="Review status.", examples=["pending"])
    uploaded_by: str = Field(description="Uploading actor.", examples=["client_42"])
    uploaded_at: datetime = Field(description="Upload timestamp.")
    reviewed_by: Optional[str] = Field(default=None, description="Reviewer.")
    review_notes: Optional[str] = Field(default=None, description="Reviewer notes.")
    reviewed_at: Optional[datetime] = Field(default=None, description="Review timestamp.")


class DomainEvent(BaseModel):
    event_id: str = Field(description="Event identifier.", examples=["jev_001"])
    event_type: DomainEventType = Field(description="Event type.", examples=["StageCompleted"])
    entity_type: EntityType = Field(description="Entity the event is about.", examples=["stage"])
    entity_id: str = Field(description="Entity identifier.", examples=["jsi_001"])
    journey_id: Optional[str] = Field(default=None, description="Owning journey, when any.")
    actor_ref: str = Field(description="Actor that caused the event.", examples=["oab_123"])
    occurred_at: datetime = Field(description="Event timestamp.")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Structured event facts.")


class JourneyIdempotencyRecord(BaseModel):
    idempotency_key: str = Field(description="Caller idempotency key.", examples=["start-001"])
    request_hash: str = Field(description="Canonical request hash.", examples=["sha256:abc"])
    journey_id: str = Field(description="Journey created under this key.", examples=["ji_001"])
    created_at: datetime = Field(description="Mapping creation timestamp.")


class StageStatusGuard(BaseModel):
    stage: StageInstanceRecord
    expected_status: StageStatus


class UploadStatusGuard(BaseModel):
    upload: DocumentUploadRecord
    expected_status: UploadStatus


class JourneyChangeSet(BaseModel):
    """One atomic unit of journey persistence.

    ``expected_version`` is None when the journey is being created; otherwise the
    stored journey must still carry that version for the change set to apply.
    """

    journey: JourneyInstanceRecord
    expected_version: Optional[int] = None
    created_stages: List[StageInstanceRecord] = Field(default_factory=list)
    updated_stages: List[StageStatusGuard] = Field(default_factory=list)
    created_requirements: List[DocumentRequirementRecord] = Field(default_factory=list)
    created_uploads: List[DocumentUploadRecord] = Field(default_factory=list)
    updated_uploads: List[UploadStatusGuard] = Field(default_factory=list)
    events: List[DomainEvent] = Field(default_factory=list)
    idempotency: Optional[JourneyIdempotencyRecord] = None


class StartJourneyRequest(BaseModel):
    template_id: str = Field(description="Template to instantiate.", examples=["jt_001"])
    subject: SubjectRef = Field(description="Client and case reference.")
    owner_ref: str = Field(min_length=1, description="Responsible lawyer.", examples=["oab_123"])
    actor_ref: str = Field(
        min_length=1, description="Actor starting the journey.", examples=["oab_123"]
    )


class ActorRequest(BaseModel):
    actor_ref: str = Field(
        min_length=1, description="Actor performing the operation.", examples=["oab_123"]
    )


class CustomStageRequest(BaseModel):
    actor_ref: str = Field(
        min_length=1, description="Case worker adding the stage.", examples=["oab_123"]
    )
    title: str = Field(min_length=1, description="Stage title.", examples=["Ligar para o cliente"])
    description: Optional[str] = Field(default=None, description="Stage description.")
    kind: StageKind = Field(default="task", description="Stage kind.", examples=["task"])
    mandatory: bool = Field(
        default=False,
        description="Whether the ad-hoc stage gates journey completion.",
        examples=[False],
    )
    sla_hours: Optional[int] = Field(default=None, gt=0, description="Stage SLA in hours.")
    requirements: List[DocumentRequirementSpec] = Field(
        default_factory=list,
        description="Document requirements for upload and gate stages.",
    )


class DocumentSubmitRequest(BaseModel):
    actor_ref: str = Field(min_length=1, description="Uploading actor.", examples=["client_42"])
    requirement_id: Optional[str] = Field(
        default=None, description="Requirement the upload answers; omit for unsolicited uploads."
    )
    filename: str = Field(min_length=1, description="File name.", examples=["rg.pdf"])
    size_bytes: int = Field(ge=0, description="File size in bytes.", examples=[204800])
    mime_type: str = Field(min_length=1, description="MIME type.", examples=["application/pdf"])


class DocumentReviewRequest(BaseModel):
    actor_ref: str = Field(min_length=1, description="Reviewer.", examples=["oab_123"])
    decision: ReviewDecision = Field(description="Review decision.", examples=["approve"])
    notes: Optional[str] = Field(default=None, description="Review notes; required on rejection.")

    @model_validator(mode="after")
    def _rejection_needs_notes(self) -> "DocumentReviewRequest":
        if self.decision == "reject" and not (self.notes or "").strip():
            raise ValueError("notes are required when rejecting a document")
        return self


class RequirementStatus(BaseModel):
    requirement: DocumentRequirementRecord
    state: RequirementState = Field(description="Requirement completeness state.")
    upload_count: int = Field(description="Number of uploads addressed to the requirement.")
    latest_upload_id: Optional[str] = Field(default=None, description="Most recent upload.")
    approved_upload_id: Optional[str] = Field(
        default=None, description="Most recent approved upload, which is the one that counts."
    )


class GateStatusResponse(BaseModel):
    stage_id: str = Field(description="Stage identifier.", examples=["jsi_001"])
    kind: StageKind = Field(description="Stage kind.", examples=["upload"])
    gated: bool = Field(description="Whether the stage kind is document gated.")
    satisfied: bool = Field(description="Whether every required requirement is approved.")
    pending_requirements: List[RequirementRef] = Field(default_factory=list)
    requirements: List[RequirementStatus] = Field(default_factory=list)


class StageView(BaseModel):
    stage: StageInstanceRecord
    is_overdue: bool = Field(description="Deadline passed while the stage is still open.")


class JourneyDetailResponse(BaseModel):
    journey: JourneyInstanceRecord
    stages: List[StageView] = Field(default_factory=list)


class StageTransitionResponse(BaseModel):
    stage: StageInstanceRecord
    journey: JourneyInstanceRecord
    events: List[DomainEvent] = Field(default_factory=list)


class DocumentResponse(BaseModel):
    upload: DocumentUploadRecord
    gate: GateStatusResponse
    journey: JourneyInstanceRecord


class JourneyListResponse(BaseModel):
    items: List[JourneyInstanceRecord] = Field(default_factory=list)
    next_cursor: Optional[str] = Field(default=None, description="Cursor for the next page.")


class JourneyEventsResponse(BaseModel):
    journey_id: str
    events: List[DomainEvent] = Field(default_factory=list)


class TemplateStageDetail(BaseModel):
    stage: TemplateStageRecord
    requirements: List[DocumentRequirementRecord] = Field(default_factory=list)


class TemplateDetailResponse(BaseModel):
    template: JourneyTemplateRecord
    stages: List[TemplateStageDetail] = Field(default_factory=list)


class OverdueStage(BaseModel):
    stage: StageInstanceRecord
    owner_ref: str = Field(description="Owner of the journey the stage belongs to.")
    overdue_by_hours: float = Field(description="Hours elapsed since the due timestamp.")


class OverdueStagesResponse(BaseModel):
    as_of: datetime
    items: List[OverdueStage] = Field(default_factory=list)


class DeadlineSweepResponse(BaseModel):
    as_of: datetime
    overdue_stages: int = Field(description="Stages found overdue in this sweep.")
    notifications_sent: int = Field(description="Notifications handed to the sink.")
    rules_fired: int = Field(default=0, description="Stage rules fired by the overdue stages.")
    skipped_paused: int = Field(
        default=0, description="Overdue stages of paused journeys left unnotified."
    )


def stage_sort_key(stage: StageInstanceRecord) -> tuple[int, int, str]:
    return (stage.position, stage.sequence_no, stage.stage_id)
