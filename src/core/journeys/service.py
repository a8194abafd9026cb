import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from src.core.journeys import workflow
from src.core.journeys.deadlines import DeadlineTracker, is_overdue, overdue_by_hours
from src.core.journeys.documents import DocumentGateEvaluator, build_gate_status
from src.core.journeys.errors import (
    ConcurrentModificationError,
    IdempotencyConflictError,
    JourneyNotFoundError,
    RequirementNotFoundError,
    StageNotFoundError,
    StoreUnavailableError,
    UploadNotFoundError,
)
from src.core.journeys.events import ChangeNotifier, NotificationSink, new_event
from src.core.journeys.ids import request_fingerprint
from src.core.journeys.models import (
    CustomStageRequest,
    DeadlineSweepResponse,
    DocumentRequirementRecord,
    DocumentResponse,
    DocumentReviewRequest,
    DocumentSubmitRequest,
    DocumentUploadRecord,
    DomainEvent,
    GateStatusResponse,
    JourneyChangeSet,
    JourneyDetailResponse,
    JourneyEventsResponse,
    JourneyIdempotencyRecord,
    JourneyInstanceRecord,
    JourneyListResponse,
    NextAction,
    OverdueStage,
    OverdueStagesResponse,
    StageInstanceRecord,
    StageRule,
    StageStatusGuard,
    StageTransitionResponse,
    StageView,
    StartJourneyRequest,
    TemplateDetailResponse,
    TemplatePublishRequest,
    UploadStatusGuard,
    stage_sort_key,
)
from src.core.journeys.progress import (
    GateLookup,
    compute_next_action,
    compute_progress,
    detect_inconsistency,
)
from src.core.journeys.repository import JourneyRepository
from src.core.journeys.rules import (
    EVENT_TRIGGERS,
    default_stage_rules,
    matching_rules,
    notification_subject,
)
from src.core.journeys.subjects import FormatSubjectResolver, SubjectResolver
from src.core.journeys.templates import TemplateRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SWEEP_ACTOR = "system:deadline-sweep"

_EVENT_LOG_NAMES = {
    "JourneyStarted": "journey.started",
    "StageStarted": "stage.started",
    "StageAdded": "stage.added",
    "StageCompleted": "stage.completed",
    "JourneyPaused": "journey.paused",
    "JourneyResumed": "journey.resumed",
    "JourneyCompleted": "journey.completed",
    "JourneyReconciled": "journey.reconciled",
    "DocumentSubmitted": "document.submitted",
    "DocumentReviewed": "document.reviewed",
}


class JourneyOrchestrationService:
    """Entry point for every journey operation.

    Mutations read the current state, run the pure state machine in
    ``workflow``, recompute the cached progress and next action from the
    post-mutation stage set and persist everything with one
    ``apply_changes`` call. A lost optimistic-concurrency race re-runs the whole
    operation against a fresh read, so a cached value is never derived from a
    stale snapshot. Events are published only after the commit succeeded.
    """

    def __init__(
        self,
        *,
        repository: JourneyRepository,
        notifier: Optional[ChangeNotifier] = None,
        notification_sink: Optional[NotificationSink] = None,
        subject_resolver: Optional[SubjectResolver] = None,
        max_conflict_retries: int = 3,
        read_retry_attempts: int = 2,
    ) -> None:
        self._repository = repository
        self._registry = TemplateRegistry(repository=repository)
        self._gates = DocumentGateEvaluator(repository=repository)
        self._deadlines = DeadlineTracker(repository=repository)
        self._notifier = notifier
        self._notification_sink = notification_sink
        self._subjects = subject_resolver or FormatSubjectResolver()
        self._max_conflict_retries = max(0, max_conflict_retries)
        self._read_retry_attempts = max(0, read_retry_attempts)

    @property
    def registry(self) -> TemplateRegistry:
        return self._registry

    # Templates

    def get_template(self, *, template_id: str) -> TemplateDetailResponse:
        return self._read("get_template", lambda: self._registry.describe(template_id))

    def publish_template(
        self, *, payload: TemplatePublishRequest, now: Optional[datetime] = None
    ) -> TemplateDetailResponse:
        return self._registry.publish_template(payload, now=now)

    def revise_template(
        self,
        *,
        template_id: str,
        payload: TemplatePublishRequest,
        now: Optional[datetime] = None,
    ) -> TemplateDetailResponse:
        return self._registry.revise_template(template_id, payload, now=now)

    # Journey lifecycle

    def start_journey(
        self,
        *,
        payload: StartJourneyRequest,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JourneyDetailResponse:
        moment = now or _utc_now()
        request_hash = request_fingerprint(payload.model_dump(mode="json"))

        def attempt() -> JourneyDetailResponse:
            if idempotency_key is not None:
                existing = self._repository.get_idempotency(idempotency_key=idempotency_key)
                if existing is not None:
                    if existing.request_hash != request_hash:
                        raise IdempotencyConflictError(
                            message="Idempotency key was already used with a different request.",
                            details={"idempotency_key": idempotency_key},
                        )
                    return self._detail(self._load_journey(existing.journey_id), moment)

            template = self._registry.get_template(payload.template_id)
            template_stages = self._registry.list_stages(payload.template_id)
            subject = self._subjects.resolve(payload.subject)
            journey, stages, events = workflow.start_journey(
                template=template,
                template_stages=template_stages,
                subject=subject,
                owner_ref=payload.owner_ref,
                actor_ref=payload.actor_ref,
                now=moment,
            )
            idempotency = None
            if idempotency_key is not None:
                idempotency = JourneyIdempotencyRecord(
                    idempotency_key=idempotency_key,
                    request_hash=request_hash,
                    journey_id=journey.journey_id,
                    created_at=moment,
                )
            changes = self._prepare(
                current=None,
                journey=journey,
                stages=stages,
                actor_ref=payload.actor_ref,
                now=moment,
                events=events,
                created_stages=stages,
                idempotency=idempotency,
            )
            self._commit(changes)
            return self._detail(changes.journey, moment, stages=stages)

        return self._mutate("start_journey", attempt)

    def start_stage(
        self, *, stage_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> StageTransitionResponse:
        moment = now or _utc_now()

        def attempt() -> StageTransitionResponse:
            stage = self._load_stage(stage_id)
            journey = self._load_journey(stage.journey_id)
            started, event = workflow.start_stage(
                journey=journey, stage=stage, actor_ref=actor_ref, now=moment
            )
            changes = self._prepare(
                current=journey,
                journey=journey,
                stages=_replace_stage(self._stages(journey.journey_id), started),
                actor_ref=actor_ref,
                now=moment,
                events=[event],
                updated_stages=[StageStatusGuard(stage=started, expected_status=stage.status)],
            )
            self._commit(changes)
            return StageTransitionResponse(
                stage=started, journey=changes.journey, events=changes.events
            )

        return self._mutate("start_stage", attempt)

    def complete_stage(
        self, *, stage_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> StageTransitionResponse:
        moment = now or _utc_now()

        def attempt() -> StageTransitionResponse:
            stage = self._load_stage(stage_id)
            journey = self._load_journey(stage.journey_id)
            gate = self._gates.gate_status(stage)
            completed, event = workflow.complete_stage(
                journey=journey,
                stage=stage,
                gate_satisfied=gate.satisfied,
                pending=[
                    status.requirement
                    for status in gate.requirements
                    if status.state != "approved"
                ],
                actor_ref=actor_ref,
                now=moment,
            )
            changes = self._prepare(
                current=journey,
                journey=journey,
                stages=_replace_stage(self._stages(journey.journey_id), completed),
                actor_ref=actor_ref,
                now=moment,
                events=[event],
                updated_stages=[StageStatusGuard(stage=completed, expected_status=stage.status)],
            )
            self._commit(changes)
            return StageTransitionResponse(
                stage=completed, journey=changes.journey, events=changes.events
            )

        return self._mutate("complete_stage", attempt)

    def add_custom_stage(
        self,
        *,
        journey_id: str,
        payload: CustomStageRequest,
        now: Optional[datetime] = None,
    ) -> StageTransitionResponse:
        moment = now or _utc_now()

        def attempt() -> StageTransitionResponse:
            journey = self._load_journey(journey_id)
            existing = self._stages(journey_id)
            stage, requirements, event = workflow.add_custom_stage(
                journey=journey, existing_stages=existing, payload=payload, now=moment
            )
            changes = self._prepare(
                current=journey,
                journey=journey,
                stages=[*existing, stage],
                actor_ref=payload.actor_ref,
                now=moment,
                events=[event],
                staged_requirements=requirements,
                created_stages=[stage],
                created_requirements=requirements,
            )
            self._commit(changes)
            return StageTransitionResponse(
                stage=stage, journey=changes.journey, events=changes.events
            )

        return self._mutate("add_custom_stage", attempt)

    def pause_journey(
        self, *, journey_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> JourneyDetailResponse:
        return self._journey_transition(
            journey_id=journey_id,
            actor_ref=actor_ref,
            now=now,
            operation="pause_journey",
            transition=workflow.pause_journey,
        )

    def resume_journey(
        self, *, journey_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> JourneyDetailResponse:
        return self._journey_transition(
            journey_id=journey_id,
            actor_ref=actor_ref,
            now=now,
            operation="resume_journey",
            transition=workflow.resume_journey,
        )

    def submit_document(
        self,
        *,
        stage_id: str,
        payload: DocumentSubmitRequest,
        now: Optional[datetime] = None,
    ) -> DocumentResponse:
        moment = now or _utc_now()

        def attempt() -> DocumentResponse:
            stage = self._load_stage(stage_id)
            journey = self._load_journey(stage.journey_id)
            requirement = self._resolve_requirement(stage, payload.requirement_id)
            upload, event = workflow.submit_upload(
                journey=journey,
                stage=stage,
                requirement=requirement,
                payload=payload,
                now=moment,
            )
            lookup = self._gate_lookup(staged_uploads=[upload])
            changes = self._prepare(
                current=journey,
                journey=journey,
                stages=self._stages(journey.journey_id),
                actor_ref=payload.actor_ref,
                now=moment,
                events=[event],
                staged_uploads=[upload],
                created_uploads=[upload],
            )
            self._commit(changes)
            return DocumentResponse(upload=upload, gate=lookup(stage), journey=changes.journey)

        return self._mutate("submit_document", attempt)

    def review_document(
        self,
        *,
        upload_id: str,
        payload: DocumentReviewRequest,
        now: Optional[datetime] = None,
    ) -> DocumentResponse:
        moment = now or _utc_now()

        def attempt() -> DocumentResponse:
            upload = self._load_upload(upload_id)
            stage = self._load_stage(upload.stage_id)
            journey = self._load_journey(stage.journey_id)
            reviewed, event = workflow.review_upload(
                journey=journey, upload=upload, payload=payload, now=moment
            )
            lookup = self._gate_lookup(staged_uploads=[reviewed])
            changes = self._prepare(
                current=journey,
                journey=journey,
                stages=self._stages(journey.journey_id),
                actor_ref=payload.actor_ref,
                now=moment,
                events=[event],
                staged_uploads=[reviewed],
                updated_uploads=[UploadStatusGuard(upload=reviewed, expected_status=upload.status)],
            )
            self._commit(changes)
            return DocumentResponse(upload=reviewed, gate=lookup(stage), journey=changes.journey)

        return self._mutate("review_document", attempt)

    def reconcile_journey(
        self, *, journey_id: str, actor_ref: str, now: Optional[datetime] = None
    ) -> JourneyDetailResponse:
        """Repair cached progress, next action and completion from the stored stages."""
        moment = now or _utc_now()

        def attempt() -> JourneyDetailResponse:
            journey = self._load_journey(journey_id)
            stages = self._stages(journey_id)
            issue = detect_inconsistency(journey, stages)
            if issue is None:
                return self._detail(journey, moment, stages=stages)
            event = new_event(
                "JourneyReconciled",
                entity_type="journey",
                entity_id=journey_id,
                journey_id=journey_id,
                actor_ref=actor_ref,
                occurred_at=moment,
                payload={
                    "issue": issue,
                    "cached_progress_pct": journey.progress_pct,
                    "cached_status": journey.status,
                },
            )
            changes = self._prepare(
                current=journey,
                journey=journey,
                stages=stages,
                actor_ref=actor_ref,
                now=moment,
                events=[event],
            )
            self._commit(changes)
            return self._detail(changes.journey, moment, stages=stages)

        return self._mutate("reconcile_journey", attempt)

    # Queries

    def get_journey(
        self, *, journey_id: str, now: Optional[datetime] = None
    ) -> JourneyDetailResponse:
        moment = now or _utc_now()

        def read() -> JourneyDetailResponse:
            journey = self._load_journey(journey_id)
            stages = self._stages(journey_id)
            issue = detect_inconsistency(journey, stages)
            if issue is not None:
                logger.warning(
                    "journey.inconsistent",
                    extra={"extra_fields": {"journey_id": journey_id, "issue": issue}},
                )
            return self._detail(journey, moment, stages=stages)

        return self._read("get_journey", read)

    def list_journeys(
        self,
        *,
        status: Optional[str] = None,
        owner_ref: Optional[str] = None,
        client_tax_id: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> JourneyListResponse:
        tax_id = None
        if client_tax_id:
            tax_id = "".join(char for char in client_tax_id if char.isdigit())

        def read() -> JourneyListResponse:
            rows, next_cursor = self._repository.list_journeys(
                status=status,
                owner_ref=owner_ref,
                client_tax_id=tax_id,
                template_id=template_id,
                limit=limit,
                cursor=cursor,
            )
            return JourneyListResponse(items=rows, next_cursor=next_cursor)

        return self._read("list_journeys", read)

    def list_stages(self, *, journey_id: str, now: Optional[datetime] = None) -> list[StageView]:
        moment = now or _utc_now()

        def read() -> list[StageView]:
            self._load_journey(journey_id)
            return [
                StageView(stage=stage, is_overdue=is_overdue(stage, moment))
                for stage in self._stages(journey_id)
            ]

        return self._read("list_stages", read)

    def get_progress(self, *, journey_id: str) -> int:
        def read() -> int:
            self._load_journey(journey_id)
            return compute_progress(self._stages(journey_id))

        return self._read("get_progress", read)

    def get_next_action(
        self, *, journey_id: str, now: Optional[datetime] = None
    ) -> Optional[NextAction]:
        moment = now or _utc_now()

        def read() -> Optional[NextAction]:
            self._load_journey(journey_id)
            return compute_next_action(self._stages(journey_id), self._gate_lookup(), moment)

        return self._read("get_next_action", read)

    def get_gate_status(self, *, stage_id: str) -> GateStatusResponse:
        return self._read(
            "get_gate_status", lambda: self._gates.gate_status(self._load_stage(stage_id))
        )

    def list_events(self, *, journey_id: str) -> JourneyEventsResponse:
        def read() -> JourneyEventsResponse:
            self._load_journey(journey_id)
            return JourneyEventsResponse(
                journey_id=journey_id,
                events=self._repository.list_events(journey_id=journey_id),
            )

        return self._read("list_events", read)

    def find_overdue_stages(
        self, *, journey_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> OverdueStagesResponse:
        moment = now or _utc_now()

        def read() -> OverdueStagesResponse:
            if journey_id is not None:
                self._load_journey(journey_id)
            stages = self._deadlines.find_overdue(journey_id=journey_id, now=moment)
            owners: dict[str, str] = {}
            items = []
            for stage in stages:
                if stage.journey_id not in owners:
                    owners[stage.journey_id] = self._load_journey(stage.journey_id).owner_ref
                items.append(
                    OverdueStage(
                        stage=stage,
                        owner_ref=owners[stage.journey_id],
                        overdue_by_hours=overdue_by_hours(stage, moment),
                    )
                )
            return OverdueStagesResponse(as_of=moment, items=items)

        return self._read("find_overdue_stages", read)

    def sweep_overdue(self, *, now: Optional[datetime] = None) -> DeadlineSweepResponse:
        """Notify owners of every overdue stage of an active journey.

        Stateless: repeated sweeps re-notify. Paused journeys are skipped until
        resumed; their stages still show up in ``find_overdue_stages``.
        """
        overdue = self.find_overdue_stages(now=now)
        notifications_sent = 0
        rules_fired = 0
        skipped_paused = 0
        journeys: dict[str, JourneyInstanceRecord] = {}
        for item in overdue.items:
            journey_id = item.stage.journey_id
            if journey_id not in journeys:
                journeys[journey_id] = self._read(
                    "sweep_overdue", lambda: self._load_journey(journey_id)
                )
            journey = journeys[journey_id]
            if journey.status == "paused":
                skipped_paused += 1
                continue
            event = new_event(
                "DeadlinePassed",
                entity_type="stage",
                entity_id=item.stage.stage_id,
                journey_id=item.stage.journey_id,
                actor_ref=SWEEP_ACTOR,
                occurred_at=overdue.as_of,
                payload={
                    "due_at": item.stage.due_at.isoformat() if item.stage.due_at else None,
                    "overdue_by_hours": item.overdue_by_hours,
                    "owner_ref": item.owner_ref,
                },
            )
            self._publish([event])
            if self._notification_sink is not None:
                self._notification_sink.notify(
                    recipient_ref=item.owner_ref,
                    subject=f"Stage overdue: {item.stage.title}",
                    body=(
                        f"Stage {item.stage.title} of journey {item.stage.journey_id} "
                        f"is {item.overdue_by_hours}h past its deadline."
                    ),
                    related_entity_ref=item.stage.stage_id,
                )
                notifications_sent += 1
            rules_fired += self._fire_stage_rules(
                journey, [event], {item.stage.stage_id: item.stage}
            )
        logger.info(
            "deadline.sweep",
            extra={
                "extra_fields": {
                    "overdue_stages": len(overdue.items),
                    "notifications_sent": notifications_sent,
                    "rules_fired": rules_fired,
                    "skipped_paused": skipped_paused,
                }
            },
        )
        return DeadlineSweepResponse(
            as_of=overdue.as_of,
            overdue_stages=len(overdue.items),
            notifications_sent=notifications_sent,
            rules_fired=rules_fired,
            skipped_paused=skipped_paused,
        )

    # Internals

    def _journey_transition(
        self,
        *,
        journey_id: str,
        actor_ref: str,
        now: Optional[datetime],
        operation: str,
        transition: Callable[..., tuple[JourneyInstanceRecord, DomainEvent]],
    ) -> JourneyDetailResponse:
        moment = now or _utc_now()

        def attempt() -> JourneyDetailResponse:
            journey = self._load_journey(journey_id)
            stages = self._stages(journey_id)
            updated, event = transition(journey, actor_ref=actor_ref, now=moment)
            changes = self._prepare(
                current=journey,
                journey=updated,
                stages=stages,
                actor_ref=actor_ref,
                now=moment,
                events=[event],
            )
            self._commit(changes)
            return self._detail(changes.journey, moment, stages=stages)

        return self._mutate(operation, attempt)

    def _prepare(
        self,
        *,
        current: Optional[JourneyInstanceRecord],
        journey: JourneyInstanceRecord,
        stages: list[StageInstanceRecord],
        actor_ref: str,
        now: datetime,
        events: list[DomainEvent],
        staged_uploads: Iterable[DocumentUploadRecord] = (),
        staged_requirements: Iterable[DocumentRequirementRecord] = (),
        **changes,
    ) -> JourneyChangeSet:
        refreshed, completion_events = workflow.refresh_journey(
            journey=journey,
            stages=stages,
            gate_lookup=self._gate_lookup(
                staged_uploads=staged_uploads, staged_requirements=staged_requirements
            ),
            actor_ref=actor_ref,
            now=now,
        )
        version = current.version + 1 if current is not None else 1
        return JourneyChangeSet(
            journey=refreshed.model_copy(update={"version": version}),
            expected_version=current.version if current is not None else None,
            events=[*events, *completion_events],
            **changes,
        )

    def _commit(self, changes: JourneyChangeSet) -> None:
        self._repository.apply_changes(changes)
        for event in changes.events:
            logger.info(
                _EVENT_LOG_NAMES.get(event.event_type, "journey.event"),
                extra={
                    "extra_fields": {
                        "event_type": event.event_type,
                        "journey_id": event.journey_id,
                        "entity_id": event.entity_id,
                        "actor_ref": event.actor_ref,
                        "journey_version": changes.journey.version,
                    }
                },
            )
        self._publish(changes.events)
        self._notify(changes.journey, changes.events)
        touched = {
            **{stage.stage_id: stage for stage in changes.created_stages},
            **{guard.stage.stage_id: guard.stage for guard in changes.updated_stages},
        }
        self._fire_stage_rules(changes.journey, changes.events, touched)

    def _publish(self, events: list[DomainEvent]) -> None:
        if self._notifier is None:
            return
        for event in events:
            try:
                self._notifier.publish(event)
            except Exception:
                # the commit already happened; subscribers catch up from the timeline
                logger.exception(
                    "event.publish_failed",
                    extra={"extra_fields": {"event_id": event.event_id}},
                )

    def _notify(self, journey: JourneyInstanceRecord, events: list[DomainEvent]) -> None:
        if self._notification_sink is None:
            return
        for event in events:
            rejected = event.payload.get("decision") == "reject"
            if event.event_type == "JourneyCompleted":
                self._notification_sink.notify(
                    recipient_ref=journey.owner_ref,
                    subject="Journey completed",
                    body=f"Journey {journey.journey_id} completed all mandatory stages.",
                    related_entity_ref=journey.journey_id,
                )
            elif event.event_type == "DocumentReviewed" and rejected:
                self._notification_sink.notify(
                    recipient_ref=str(event.payload.get("uploaded_by")),
                    subject="Document rejected",
                    body=str(event.payload.get("notes") or ""),
                    related_entity_ref=event.entity_id,
                )

    def _fire_stage_rules(
        self,
        journey: JourneyInstanceRecord,
        events: list[DomainEvent],
        stages: dict[str, StageInstanceRecord],
    ) -> int:
        """Run the stage rules matching ``events``; returns how many fired.

        Runs after the commit, so a store outage while loading template rules
        skips automation for this batch instead of failing the operation.
        """
        fired = 0
        template_rules: Optional[dict[str, list[StageRule]]] = None
        for event in events:
            stage = stages.get(event.entity_id)
            if stage is None or event.event_type not in EVENT_TRIGGERS:
                continue
            if stage.template_stage_id is None:
                rules = default_stage_rules(stage.kind)
            else:
                if template_rules is None:
                    try:
                        template_rules = {
                            item.template_stage_id: item.rules
                            for item in self._repository.list_template_stages(
                                template_id=journey.template_id
                            )
                        }
                    except StoreUnavailableError:
                        logger.warning(
                            "stage_rules.skipped",
                            extra={"extra_fields": {"journey_id": journey.journey_id}},
                        )
                        return fired
                rules = template_rules.get(stage.template_stage_id, [])
            for rule in matching_rules(rules, event.event_type):
                self._fire_rule(journey, stage, rule, event)
                fired += 1
        return fired

    def _fire_rule(
        self,
        journey: JourneyInstanceRecord,
        stage: StageInstanceRecord,
        rule: StageRule,
        source: DomainEvent,
    ) -> None:
        triggered = new_event(
            "StageRuleTriggered",
            entity_type="stage",
            entity_id=stage.stage_id,
            journey_id=stage.journey_id,
            actor_ref=source.actor_ref,
            occurred_at=source.occurred_at,
            payload={
                "trigger": rule.trigger,
                "action_type": rule.action_type,
                "action_config": dict(rule.action_config),
                "source_event_id": source.event_id,
                "owner_ref": journey.owner_ref,
            },
        )
        self._publish([triggered])
        if rule.action_type == "notify" and self._notification_sink is not None:
            self._notification_sink.notify(
                recipient_ref=str(rule.action_config.get("recipient_ref") or journey.owner_ref),
                subject=notification_subject(rule, stage.title),
                body=f"Stage {stage.title} of journey {stage.journey_id} ({rule.trigger}).",
                related_entity_ref=stage.stage_id,
            )
        logger.info(
            "stage_rule.fired",
            extra={
                "extra_fields": {
                    "journey_id": stage.journey_id,
                    "stage_id": stage.stage_id,
                    "trigger": rule.trigger,
                    "action_type": rule.action_type,
                }
            },
        )

    def _gate_lookup(
        self,
        *,
        staged_uploads: Iterable[DocumentUploadRecord] = (),
        staged_requirements: Iterable[DocumentRequirementRecord] = (),
    ) -> GateLookup:
        uploads = list(staged_uploads)
        requirements = list(staged_requirements)

        def lookup(stage: StageInstanceRecord) -> GateStatusResponse:
            stage_refs = {stage.stage_id, stage.template_stage_id}
            by_requirement = {
                item.requirement_id: item for item in self._gates.requirements_for(stage)
            }
            by_requirement.update(
                (item.requirement_id, item) for item in requirements if item.stage_ref in stage_refs
            )
            stored_uploads = self._repository.list_uploads(stage_id=stage.stage_id)
            by_upload = {item.upload_id: item for item in stored_uploads}
            by_upload.update(
                (item.upload_id, item) for item in uploads if item.stage_id == stage.stage_id
            )
            ordered = sorted(
                by_requirement.values(), key=lambda item: (item.name, item.requirement_id)
            )
            return build_gate_status(stage, ordered, list(by_upload.values()))

        return lookup

    def _mutate(self, operation: str, attempt: Callable[[], T]) -> T:
        retries = 0
        while True:
            try:
                return attempt()
            except ConcurrentModificationError as exc:
                if retries >= self._max_conflict_retries:
                    logger.warning(
                        "journey.conflict_retries_exhausted",
                        extra={
                            "extra_fields": {
                                "operation": operation,
                                "guard": exc.guard,
                                "retries": retries,
                            }
                        },
                    )
                    raise
                retries += 1
                logger.info(
                    "journey.conflict_retry",
                    extra={
                        "extra_fields": {
                            "operation": operation,
                            "guard": exc.guard,
                            "attempt": retries,
                        }
                    },
                )

    def _read(self, operation: str, read: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return read()
            except StoreUnavailableError:
                if attempt >= self._read_retry_attempts:
                    raise
                attempt += 1
                logger.warning(
                    "store.read_retry",
                    extra={"extra_fields": {"operation": operation, "attempt": attempt}},
                )

    def _resolve_requirement(
        self, stage: StageInstanceRecord, requirement_id: Optional[str]
    ) -> Optional[DocumentRequirementRecord]:
        if requirement_id is None:
            return None
        requirement = self._repository.get_requirement(requirement_id=requirement_id)
        if requirement is None or requirement.stage_ref not in {
            stage.stage_id,
            stage.template_stage_id,
        }:
            raise RequirementNotFoundError(
                details={"requirement_id": requirement_id, "stage_id": stage.stage_id}
            )
        return requirement

    def _load_journey(self, journey_id: str) -> JourneyInstanceRecord:
        journey = self._repository.get_journey(journey_id=journey_id)
        if journey is None:
            raise JourneyNotFoundError(details={"journey_id": journey_id})
        return journey

    def _load_stage(self, stage_id: str) -> StageInstanceRecord:
        stage = self._repository.get_stage(stage_id=stage_id)
        if stage is None:
            raise StageNotFoundError(details={"stage_id": stage_id})
        return stage

    def _load_upload(self, upload_id: str) -> DocumentUploadRecord:
        upload = self._repository.get_upload(upload_id=upload_id)
        if upload is None:
            raise UploadNotFoundError(details={"upload_id": upload_id})
        return upload

    def _stages(self, journey_id: str) -> list[StageInstanceRecord]:
        return sorted(self._repository.list_stages(journey_id=journey_id), key=stage_sort_key)

    def _detail(
        self,
        journey: JourneyInstanceRecord,
        now: datetime,
        *,
        stages: Optional[list[StageInstanceRecord]] = None,
    ) -> JourneyDetailResponse:
        resolved = stages if stages is not None else self._stages(journey.journey_id)
        # the stored next action is frozen at the last mutation; overdue state moves with time
        fresh = compute_next_action(resolved, self._gate_lookup(), now)
        return JourneyDetailResponse(
            journey=journey.model_copy(update={"next_action": fresh}),
            stages=[
                StageView(stage=stage, is_overdue=is_overdue(stage, now))
                for stage in sorted(resolved, key=stage_sort_key)
            ],
        )


def _replace_stage(
    stages: list[StageInstanceRecord], updated: StageInstanceRecord
) -> list[StageInstanceRecord]:
    return [updated if stage.stage_id == updated.stage_id else stage for stage in stages]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
