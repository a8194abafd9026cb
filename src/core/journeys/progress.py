"""Progress and next-action calculation.

Both are pure functions over a journey's stage instances. Callers decide whether
to cache the results on the journey record; the cached values must always match
what these functions return for the stored stages.
"""

from datetime import datetime
from typing import Callable, Optional

from src.core.journeys.deadlines import is_overdue
from src.core.journeys.documents import is_gated
from src.core.journeys.models import (
    GateStatusResponse,
    JourneyInstanceRecord,
    NextAction,
    RequirementRef,
    StageInstanceRecord,
    stage_sort_key,
)

GateLookup = Callable[[StageInstanceRecord], GateStatusResponse]


def compute_progress(stages: list[StageInstanceRecord]) -> int:
    total = len(stages)
    if total == 0:
        return 0
    completed = sum(1 for stage in stages if stage.status == "completed")
    # integer half-up rounding of 100 * completed / total
    return (200 * completed + total) // (2 * total)


def is_journey_complete(stages: list[StageInstanceRecord]) -> bool:
    if not stages:
        return False
    mandatory = [stage for stage in stages if stage.mandatory]
    gating = mandatory or stages
    return all(stage.status == "completed" for stage in gating)


def first_open_stage(stages: list[StageInstanceRecord]) -> Optional[StageInstanceRecord]:
    for stage in sorted(stages, key=stage_sort_key):
        if stage.status != "completed":
            return stage
    return None


def compute_next_action(
    stages: list[StageInstanceRecord],
    gate_lookup: GateLookup,
    now: datetime,
) -> Optional[NextAction]:
    stage = first_open_stage(stages)
    if stage is None:
        return None
    overdue = is_overdue(stage, now)
    if overdue:
        priority = "high"
    elif stage.mandatory:
        priority = "medium"
    else:
        priority = "low"

    if is_gated(stage):
        gate = gate_lookup(stage)
        if not gate.satisfied:
            unmet = [
                status
                for status in gate.requirements
                if status.requirement.required and status.state != "approved"
            ]
            awaiting = bool(unmet) and all(status.state == "awaiting_review" for status in unmet)
            names = ", ".join(status.requirement.name for status in unmet)
            missing = gate.pending_requirements
            if awaiting:
                return NextAction(
                    type="await_review",
                    stage_id=stage.stage_id,
                    title=f"Awaiting document review: {stage.title}",
                    description=f"Submitted documents are waiting for review: {names}.",
                    due_at=stage.due_at,
                    is_overdue=overdue,
                    priority=priority,
                    missing_requirements=missing,
                )
            return NextAction(
                type="submit_documents",
                stage_id=stage.stage_id,
                title=f"Submit documents: {stage.title}",
                description=f"Missing approved documents: {names}.",
                due_at=stage.due_at,
                is_overdue=overdue,
                priority=priority,
                missing_requirements=missing,
            )

    return NextAction(
        type="complete_stage",
        stage_id=stage.stage_id,
        title=f"Complete stage: {stage.title}",
        description=stage.description,
        due_at=stage.due_at,
        is_overdue=overdue,
        priority=priority,
        missing_requirements=_optional_leftovers(stage, gate_lookup),
    )


def _optional_leftovers(
    stage: StageInstanceRecord, gate_lookup: GateLookup
) -> list[RequirementRef]:
    if not is_gated(stage):
        return []
    return gate_lookup(stage).pending_requirements


def detect_inconsistency(
    journey: JourneyInstanceRecord,
    stages: list[StageInstanceRecord],
) -> Optional[str]:
    """Return a repair signal code when cached journey state disagrees with its stages."""
    complete = is_journey_complete(stages)
    if journey.status == "completed" and not complete:
        return "COMPLETED_WITH_OPEN_MANDATORY_STAGES"
    if journey.status == "active" and complete:
        return "COMPLETION_NOT_RECORDED"
    if journey.progress_pct != compute_progress(stages):
        return "PROGRESS_DRIFT"
    open_stage = first_open_stage(stages)
    cached_stage_id = journey.next_action.stage_id if journey.next_action is not None else None
    if cached_stage_id != (open_stage.stage_id if open_stage is not None else None):
        return "NEXT_ACTION_STALE"
    return None
